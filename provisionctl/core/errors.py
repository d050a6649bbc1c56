"""
Error taxonomy — every failure the engine can name.

Two families behave differently:

    ConfigurationError, PreconditionError
        Fatal, raised before any step runs. The CLI maps them to exit 2.

    StepExecutionError (and subclasses)
        Raised by the executor and backup layer for a single step. The
        PlanRunner catches them and turns them into ExecutionRecords;
        they never escape a run.

RestoreConflictError is rollback-only and halts the rollback.
"""

from __future__ import annotations


class ProvisionError(Exception):
    """Base class for all provisionctl errors."""


# ── Pre-execution ───────────────────────────────────────────────


class ConfigurationError(ProvisionError):
    """The plan itself is invalid (bad file, duplicate ids, cycles)."""


class DuplicateStepError(ConfigurationError):
    """A step id was registered twice."""

    def __init__(self, step_id: str):
        super().__init__(f"Duplicate step id: '{step_id}'")
        self.step_id = step_id


class UnknownStepError(ConfigurationError):
    """A step id was referenced but never registered."""

    def __init__(self, step_id: str, referenced_by: str | None = None):
        if referenced_by:
            msg = f"Step '{referenced_by}' depends on unknown step '{step_id}'"
        else:
            msg = f"Unknown step id: '{step_id}'"
        super().__init__(msg)
        self.step_id = step_id
        self.referenced_by = referenced_by


class CyclicDependencyError(ConfigurationError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__("Dependency cycle detected: " + " -> ".join(cycle))
        self.cycle = cycle


class PreconditionError(ProvisionError):
    """The host cannot run the plan (e.g. not running as root)."""


# ── Step-level ──────────────────────────────────────────────────


class StepExecutionError(ProvisionError):
    """A single step failed. Carries a stable ``kind`` for records."""

    kind = "step_failed"

    def __init__(self, message: str, *, step_id: str = "", output: str = ""):
        super().__init__(message)
        self.step_id = step_id
        self.output = output


class ExternalToolMissing(StepExecutionError):
    """The binary a step needs is not installed."""

    kind = "tool_missing"


class ExternalToolFailed(StepExecutionError):
    """The external tool ran and exited non-zero."""

    kind = "tool_failed"


class PermissionDenied(StepExecutionError):
    """The step lacked the privileges it needed."""

    kind = "permission_denied"


class StepTimeout(StepExecutionError):
    """The step exceeded its timeout."""

    kind = "timeout"


class BackupIOError(StepExecutionError):
    """A snapshot could not be taken or read back; the step must not run."""

    kind = "backup_io"


# Maps a receipt's error_kind back to the exception type.
ERROR_KINDS: dict[str, type[StepExecutionError]] = {
    cls.kind: cls
    for cls in (
        StepExecutionError,
        ExternalToolMissing,
        ExternalToolFailed,
        PermissionDenied,
        StepTimeout,
        BackupIOError,
    )
}


# ── Rollback ────────────────────────────────────────────────────


class RestoreConflictError(ProvisionError):
    """A later, still-applied snapshot owns a path we want to restore."""

    def __init__(self, snapshot_id: str, conflicts: dict[str, str]):
        detail = ", ".join(f"{path} (owned by {owner})" for path, owner in sorted(conflicts.items()))
        super().__init__(f"Cannot restore {snapshot_id}: {detail}")
        self.snapshot_id = snapshot_id
        self.conflicts = conflicts
