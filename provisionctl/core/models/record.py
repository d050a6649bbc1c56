"""
Run artifacts — ExecutionRecord and Snapshot.

ExecutionRecords are the run log: one per step per run, frozen once
created. Snapshots are the BackupManager's view of what a path looked
like immediately before a step touched it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Outcome(StrEnum):
    """Final outcome of one step in one run."""

    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    WOULD_RUN = "would_run"  # dry run only


class SkipReason(StrEnum):
    """Why a step was skipped."""

    SATISFIED = "satisfied"
    RESUME = "resume"
    DEPENDENCY_FAILED = "dependency_failed"


class ExecutionRecord(BaseModel):
    """One step attempt. Immutable after creation."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    step_id: str
    timestamp: str = Field(default_factory=_now_iso)
    outcome: Outcome
    reason: SkipReason | None = None

    error: str | None = None
    error_kind: str | None = None
    backup_ref: str | None = None     # snapshot_id, when one was taken
    phase: Literal["check", "backup", "apply"] | None = None  # where a failure happened

    description: str = ""
    action: str = ""                  # human-readable action summary
    reversible: bool = True
    duration_ms: int = 0

    @property
    def attempted(self) -> bool:
        """Whether ``apply`` was actually invoked."""
        return self.outcome == Outcome.SUCCEEDED or (
            self.outcome == Outcome.FAILED and self.phase == "apply"
        )


class SnapshotEntry(BaseModel):
    """Prior state of one path."""

    path: str
    kind: Literal["file", "dir", "symlink", "missing"]
    stored_as: str | None = None      # relative to the snapshot directory
    link_target: str | None = None
    mode: int | None = None

    @property
    def existed(self) -> bool:
        return self.kind != "missing"


class Snapshot(BaseModel):
    """Saved state of every path one step declared it may mutate."""

    snapshot_id: str                  # "<seq>-<step_id>"
    run_id: str
    step_id: str
    seq: int
    created_at: str = Field(default_factory=_now_iso)
    entries: list[SnapshotEntry] = Field(default_factory=list)
    restored: bool = False
    restored_at: str | None = None

    @property
    def paths(self) -> list[str]:
        return [e.path for e in self.entries]
