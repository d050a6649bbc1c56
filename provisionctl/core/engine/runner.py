"""
Plan runner — the central provisioning loop.

Walks a RunPlan in dependency order. Per step:

    PENDING → CHECKING → SATISFIED | NEEDS_RUN
    NEEDS_RUN → WOULD_RUN                      (dry run)
    NEEDS_RUN → RUNNING → SUCCEEDED | FAILED   (snapshot, then apply)
    PENDING → SKIPPED                          (before resume point, blocked)

Step-level errors never escape: each one becomes an ExecutionRecord.
With ``stop_on_failure`` the first failure halts the plan; nothing after
it is attempted. Cancellation is honored only between steps.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from provisionctl.core.engine.checks import CheckEvaluator
from provisionctl.core.engine.executor import StepExecutor
from provisionctl.core.engine.registry import RunPlan
from provisionctl.core.errors import ConfigurationError, StepExecutionError
from provisionctl.core.models.record import ExecutionRecord, Outcome, SkipReason
from provisionctl.core.models.step import Step
from provisionctl.core.observability.logging_config import bind_run_id
from provisionctl.core.persistence.backup import BackupManager
from provisionctl.core.persistence.reporter import Reporter

logger = logging.getLogger(__name__)


class StepState(StrEnum):
    """Lifecycle of one step inside one run."""

    PENDING = "pending"
    CHECKING = "checking"
    SATISFIED = "satisfied"
    NEEDS_RUN = "needs_run"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    WOULD_RUN = "would_run"


_TRANSITIONS: dict[StepState, frozenset[StepState]] = {
    StepState.PENDING: frozenset({StepState.CHECKING, StepState.SKIPPED}),
    StepState.CHECKING: frozenset({StepState.SATISFIED, StepState.NEEDS_RUN, StepState.FAILED}),
    StepState.NEEDS_RUN: frozenset({StepState.RUNNING, StepState.WOULD_RUN}),
    StepState.RUNNING: frozenset({StepState.SUCCEEDED, StepState.FAILED}),
}


class CancelToken:
    """Thread-safe cancellation flag, checked at step boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class RunOptions:
    """Explicit per-run options (no environment coupling)."""

    dry_run: bool = False
    stop_on_failure: bool = True
    resume_from: str | None = None
    step_timeout: float | None = None   # default for steps without their own
    cancel: CancelToken | None = None
    run_id: str | None = None


@dataclass
class RunResult:
    """Outcome of one ``PlanRunner.execute`` call."""

    run_id: str
    plan_name: str = ""
    dry_run: bool = False
    records: list[ExecutionRecord] = field(default_factory=list)
    states: dict[str, StepState] = field(default_factory=dict)
    halted_at: str | None = None
    cancelled: bool = False

    def _ids(self, outcome: Outcome) -> list[str]:
        return [r.step_id for r in self.records if r.outcome == outcome]

    @property
    def succeeded(self) -> list[str]:
        return self._ids(Outcome.SUCCEEDED)

    @property
    def skipped(self) -> list[str]:
        return self._ids(Outcome.SKIPPED)

    @property
    def failed(self) -> list[str]:
        return self._ids(Outcome.FAILED)

    @property
    def would_run(self) -> list[str]:
        return self._ids(Outcome.WOULD_RUN)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def status(self) -> str:
        if self.failed:
            return "failed"
        if self.cancelled:
            return "cancelled"
        if self.dry_run:
            return "dry_run"
        return "succeeded"

    def counts(self) -> dict[str, int]:
        return {
            "succeeded": len(self.succeeded),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "would_run": len(self.would_run),
        }

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "plan": self.plan_name,
            "status": self.status,
            "dry_run": self.dry_run,
            "halted_at": self.halted_at,
            "cancelled": self.cancelled,
            "summary": self.counts(),
            "records": [r.model_dump(mode="json") for r in self.records],
        }


def generate_run_id() -> str:
    """Timestamped, sortable run id (also the backup directory name)."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"{now}-{short}"


class PlanRunner:
    """Execute RunPlans one step at a time.

    Args:
        executor: Applies step actions.
        backups: Snapshots ``mutates_paths`` before each apply.
        reporter: Append-only run log.
        evaluator: Idempotency check evaluation.
    """

    def __init__(
        self,
        executor: StepExecutor,
        backups: BackupManager,
        reporter: Reporter,
        evaluator: CheckEvaluator | None = None,
    ):
        self._executor = executor
        self._backups = backups
        self._reporter = reporter
        self._evaluator = evaluator or CheckEvaluator()

    def execute(self, plan: RunPlan, options: RunOptions | None = None) -> RunResult:
        """Run every step of ``plan``.

        Raises:
            ConfigurationError: ``resume_from`` names a step not in the plan.
                Raised before anything is executed or logged.
        """
        options = options or RunOptions()
        if options.resume_from is not None and options.resume_from not in plan:
            raise ConfigurationError(
                f"Cannot resume from '{options.resume_from}': step is not in the plan"
            )

        result = RunResult(
            run_id=options.run_id or generate_run_id(),
            plan_name=plan.name,
            dry_run=options.dry_run,
            states={s.id: StepState.PENDING for s in plan},
        )
        self._reporter.start_run(result.run_id, plan, options)
        bind_run_id(result.run_id)
        logger.info(
            "Run %s: %d steps%s", result.run_id, len(plan), " (dry run)" if options.dry_run else "",
        )

        try:
            self._run_steps(plan, options, result)
        except KeyboardInterrupt:
            result.cancelled = True
            raise
        finally:
            self._reporter.finish_run(result)
            bind_run_id(None)
        return result

    def _run_steps(self, plan: RunPlan, options: RunOptions, result: RunResult) -> None:
        # Steps whose dependents may proceed: succeeded, skipped (any reason
        # except a failed dependency), would_run
        cleared: set[str] = set()
        resume_reached = options.resume_from is None

        for step in plan:
            if options.cancel is not None and options.cancel.cancelled:
                logger.warning("Run %s cancelled before step %s", result.run_id, step.id)
                result.cancelled = True
                break

            if not resume_reached:
                if step.id == options.resume_from:
                    resume_reached = True
                else:
                    self._skip(result, step, SkipReason.RESUME)
                    cleared.add(step.id)
                    continue

            unmet = [d for d in step.depends_on if d in plan and d not in cleared]
            if unmet:
                self._skip(
                    result, step, SkipReason.DEPENDENCY_FAILED,
                    error=f"Blocked by: {', '.join(unmet)}",
                )
                continue

            record = self._run_step(result, step, options)
            if record.outcome == Outcome.FAILED:
                if options.stop_on_failure:
                    result.halted_at = step.id
                    logger.error("Run %s halted at %s: %s", result.run_id, step.id, record.error)
                    break
            else:
                cleared.add(step.id)

    # ── Per-step ────────────────────────────────────────────────

    def _run_step(self, result: RunResult, step: Step, options: RunOptions) -> ExecutionRecord:
        start = time.monotonic()
        self._transition(result, step.id, StepState.CHECKING)

        try:
            satisfied = self._evaluator.is_satisfied(step.check)
        except StepExecutionError as e:
            self._transition(result, step.id, StepState.FAILED)
            return self._append(
                result, step, Outcome.FAILED, start,
                error=str(e), error_kind=e.kind, phase="check",
            )
        except Exception as e:
            logger.error("Check of %s raised: %s", step.id, e)
            self._transition(result, step.id, StepState.FAILED)
            return self._append(
                result, step, Outcome.FAILED, start,
                error=f"Unexpected error: {e}", error_kind="step_failed", phase="check",
            )

        if satisfied:
            self._transition(result, step.id, StepState.SATISFIED)
            logger.info("⊘ %s already satisfied", step.id)
            return self._append(result, step, Outcome.SKIPPED, start, reason=SkipReason.SATISFIED)

        self._transition(result, step.id, StepState.NEEDS_RUN)

        if options.dry_run:
            self._transition(result, step.id, StepState.WOULD_RUN)
            logger.info("[dry-run] would run %s: %s", step.id, step.action.display)
            return self._append(result, step, Outcome.WOULD_RUN, start)

        self._transition(result, step.id, StepState.RUNNING)

        snapshot_id: str | None = None
        if step.mutates_paths:
            try:
                snapshot = self._backups.snapshot(step.mutates_paths, step.id, result.run_id)
                snapshot_id = snapshot.snapshot_id
            except StepExecutionError as e:
                self._transition(result, step.id, StepState.FAILED)
                return self._append(
                    result, step, Outcome.FAILED, start,
                    error=str(e), error_kind=e.kind, phase="backup",
                )

        timeout = step.timeout if step.timeout is not None else options.step_timeout
        try:
            self._executor.apply(step, run_id=result.run_id, timeout=timeout)
        except StepExecutionError as e:
            self._transition(result, step.id, StepState.FAILED)
            logger.error("✗ %s: %s", step.id, e)
            return self._append(
                result, step, Outcome.FAILED, start,
                error=str(e), error_kind=e.kind, phase="apply", backup_ref=snapshot_id,
            )

        self._transition(result, step.id, StepState.SUCCEEDED)
        logger.info("✓ %s", step.id)
        return self._append(result, step, Outcome.SUCCEEDED, start, backup_ref=snapshot_id)

    def _skip(
        self,
        result: RunResult,
        step: Step,
        reason: SkipReason,
        error: str | None = None,
    ) -> ExecutionRecord:
        self._transition(result, step.id, StepState.SKIPPED)
        return self._append(result, step, Outcome.SKIPPED, time.monotonic(), reason=reason, error=error)

    def _append(
        self,
        result: RunResult,
        step: Step,
        outcome: Outcome,
        start: float,
        **fields,
    ) -> ExecutionRecord:
        record = ExecutionRecord(
            run_id=result.run_id,
            step_id=step.id,
            outcome=outcome,
            description=step.description,
            action=step.action.display,
            reversible=step.reversible,
            duration_ms=int((time.monotonic() - start) * 1000),
            **fields,
        )
        self._reporter.record(record)
        result.records.append(record)
        return record

    @staticmethod
    def _transition(result: RunResult, step_id: str, new: StepState) -> None:
        old = result.states[step_id]
        if new not in _TRANSITIONS.get(old, frozenset()):
            raise RuntimeError(f"Illegal step transition for {step_id}: {old} → {new}")
        logger.debug("%s: %s → %s", step_id, old, new)
        result.states[step_id] = new
