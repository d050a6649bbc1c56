"""
Backup management use cases — list and prune per-run snapshot areas.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from provisionctl.core.errors import BackupIOError, ConfigurationError
from provisionctl.core.persistence.backup import BackupManager

logger = logging.getLogger(__name__)


@dataclass
class BackupRunInfo:
    run_id: str
    snapshots: int = 0
    restored: int = 0
    paths: int = 0
    size_bytes: int = 0

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "snapshots": self.snapshots,
            "restored": self.restored,
            "paths": self.paths,
            "size_bytes": self.size_bytes,
        }


@dataclass
class BackupsResult:
    backup_dir: Path | None = None
    runs: list[BackupRunInfo] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {
            "backup_dir": str(self.backup_dir),
            "runs": [r.to_dict() for r in self.runs],
            "pruned": self.pruned,
        }


def list_backups(backup_dir: Path) -> BackupsResult:
    """One entry per run with a manifest, oldest first."""
    result = BackupsResult(backup_dir=backup_dir)
    manager = BackupManager(backup_dir)
    for run_id in manager.list_runs():
        info = BackupRunInfo(run_id=run_id, size_bytes=manager.size_bytes(run_id))
        try:
            snaps = manager.snapshots(run_id)
        except BackupIOError as e:
            logger.warning("Skipping %s: %s", run_id, e)
            continue
        info.snapshots = len(snaps)
        info.restored = sum(1 for s in snaps if s.restored)
        info.paths = sum(len(s.entries) for s in snaps)
        result.runs.append(info)
    return result


def prune_backups(
    backup_dir: Path,
    run_id: str | None = None,
    keep: int | None = None,
) -> BackupsResult:
    """Delete one run's backups, or all but the ``keep`` newest runs."""
    result = BackupsResult(backup_dir=backup_dir)
    if (run_id is None) == (keep is None):
        result.error = "Specify exactly one of a run id or --keep N"
        return result

    manager = BackupManager(backup_dir)
    try:
        if run_id is not None:
            if not manager.prune(run_id):
                result.error = f"No backups for run '{run_id}' in {backup_dir}"
                return result
            result.pruned = [run_id]
        else:
            result.pruned = manager.prune_keep(keep or 0)
    except (ConfigurationError, ValueError) as e:
        result.error = str(e)
    except OSError as e:
        result.error = f"Cannot prune backups in {backup_dir}: {e}"
    return result
