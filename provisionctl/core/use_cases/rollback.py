"""
Rollback use case — manually undo a previous run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from provisionctl.core.engine.rollback import RollbackCoordinator, RollbackResult
from provisionctl.core.errors import ConfigurationError, PreconditionError
from provisionctl.core.persistence.backup import BackupManager
from provisionctl.core.persistence.reporter import Reporter
from provisionctl.core.preconditions import check_privileges, check_writable

logger = logging.getLogger(__name__)


@dataclass
class RollbackRunResult:
    """Result of a rollback request (or its rejection)."""

    rollback: RollbackResult | None = None
    error: str | None = None
    error_kind: str | None = None   # configuration, precondition

    @property
    def exit_code(self) -> int:
        if self.error:
            return 2
        if self.rollback is None or not self.rollback.ok:
            return 1
        return 0

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error, "error_kind": self.error_kind}
        return self.rollback.to_dict() if self.rollback else {}


def rollback_run(
    run_id: str,
    log_path: Path,
    backup_dir: Path,
    dry_run: bool = False,
    require_root: bool = True,
) -> RollbackRunResult:
    """Restore the snapshots of ``run_id`` newest first.

    Args:
        run_id: The run to undo.
        log_path: Run log holding the run's records.
        backup_dir: Backup area holding its snapshots.
        dry_run: Only report what would be restored.
        require_root: Restoring system files needs root.
    """
    result = RollbackRunResult()
    try:
        check_privileges(require_root, dry_run=dry_run)
        if not dry_run:
            check_writable(log_path, backup_dir)
    except PreconditionError as e:
        result.error = str(e)
        result.error_kind = "precondition"
        return result

    coordinator = RollbackCoordinator(BackupManager(backup_dir), Reporter(log_path))
    try:
        result.rollback = coordinator.rollback(run_id, dry_run=dry_run)
    except ConfigurationError as e:
        result.error = str(e)
        result.error_kind = "configuration"
    return result
