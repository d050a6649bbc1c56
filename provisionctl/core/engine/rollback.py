"""
Rollback coordinator — replay a run's snapshots in reverse.

Manual only: nothing in the engine calls this after a failure. Undoing
a half-configured package automatically can do more damage than the
failure itself.

Walks the run's attempted steps (succeeded, or failed during apply)
newest first and restores each step's snapshot. Stops at, and reports:

    - the first step marked ``reversible=False``
    - the first RestoreConflictError
    - a snapshot that cannot be read back

Snapshots already restored are skipped, so rolling back twice is a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from provisionctl.core.errors import BackupIOError, ConfigurationError, RestoreConflictError
from provisionctl.core.persistence.backup import BackupManager
from provisionctl.core.persistence.reporter import Reporter

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    """Outcome of one rollback request."""

    run_id: str
    dry_run: bool = False
    restored: list[str] = field(default_factory=list)           # step ids
    nothing_to_restore: list[str] = field(default_factory=list)  # attempted, no snapshot
    already_restored: list[str] = field(default_factory=list)
    halted_at: str | None = None
    halt_reason: str | None = None   # irreversible, conflict, io_error, missing_snapshot
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.halted_at is None

    @property
    def status(self) -> str:
        if self.halted_at is not None:
            return "halted"
        return "dry_run" if self.dry_run else "restored"

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "dry_run": self.dry_run,
            "restored": self.restored,
            "nothing_to_restore": self.nothing_to_restore,
            "already_restored": self.already_restored,
            "halted_at": self.halted_at,
            "halt_reason": self.halt_reason,
            "error": self.error,
        }


class RollbackCoordinator:
    """Restore a run's snapshots, newest first."""

    def __init__(self, backups: BackupManager, reporter: Reporter):
        self._backups = backups
        self._reporter = reporter

    def rollback(self, run_id: str, dry_run: bool = False) -> RollbackResult:
        """Undo ``run_id`` as far as its snapshots allow.

        With ``dry_run`` nothing is restored or logged; ``restored``
        lists what would be.

        Raises:
            ConfigurationError: The run log holds no such run.
        """
        if not self._reporter.has_run(run_id):
            raise ConfigurationError(f"Unknown run: '{run_id}'")

        result = RollbackResult(run_id=run_id, dry_run=dry_run)
        attempted = [r for r in self._reporter.records(run_id) if r.attempted]
        logger.info("Rolling back %s: %d attempted steps", run_id, len(attempted))

        for rec in reversed(attempted):
            if not rec.reversible:
                self._halt(result, rec.step_id, "irreversible",
                           f"Step '{rec.step_id}' is irreversible; stopping here")
                break

            if rec.backup_ref is None:
                result.nothing_to_restore.append(rec.step_id)
                continue

            try:
                snap = self._backups.get(run_id, rec.backup_ref)
            except BackupIOError as e:
                self._halt(result, rec.step_id, "io_error", str(e))
                break
            if snap is None:
                self._halt(result, rec.step_id, "missing_snapshot",
                           f"Snapshot {rec.backup_ref} of step '{rec.step_id}' is gone")
                break

            if snap.restored:
                result.already_restored.append(rec.step_id)
                continue

            if dry_run:
                result.restored.append(rec.step_id)
                continue

            try:
                self._backups.restore(snap)
            except RestoreConflictError as e:
                self._halt(result, rec.step_id, "conflict", str(e))
                break
            except BackupIOError as e:
                self._halt(result, rec.step_id, "io_error", str(e))
                break
            result.restored.append(rec.step_id)
            logger.info("↺ %s restored", rec.step_id)

        if not dry_run:
            self._reporter.record_rollback(result)
        return result

    @staticmethod
    def _halt(result: RollbackResult, step_id: str, reason: str, message: str) -> None:
        result.halted_at = step_id
        result.halt_reason = reason
        result.error = message
        logger.warning("Rollback of %s halted at %s: %s", result.run_id, step_id, message)
