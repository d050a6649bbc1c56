"""
Run log — append-only, durable record of every engine decision.

The log is NDJSON: one JSON object per line, discriminated by ``type``:

    run_started   plan name, step ids, options
    record        one ExecutionRecord (skip / run / fail)
    run_finished  status and counts
    rollback      outcome of a rollback request

External-tool output is captured on free-form lines prefixed with
``#`` so ``tail -f`` stays readable and parsers can skip them:

    # 20260117-101500-a1b2c3 docker-packages | Setting up docker-ce ...

Every write is flushed and fsync'd before returning; a crash mid-plan
leaves a truthful partial log that ``resume_point()`` can use.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from provisionctl.core.errors import ConfigurationError
from provisionctl.core.models.record import ExecutionRecord, Outcome, SkipReason

if TYPE_CHECKING:
    from provisionctl.core.engine.registry import RunPlan
    from provisionctl.core.engine.rollback import RollbackResult
    from provisionctl.core.engine.runner import RunOptions, RunResult

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class RunSummary:
    """Aggregate view of one run, rebuilt from the log."""

    run_id: str
    plan: str = ""
    status: str = "incomplete"     # succeeded, failed, cancelled, dry_run, incomplete
    started_at: str = ""
    finished_at: str = ""
    dry_run: bool = False
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    would_run: int = 0
    failed_steps: list[str] = field(default_factory=list)
    irreversible_touched: list[str] = field(default_factory=list)
    halted_at: str | None = None
    rollbacks: int = 0

    @property
    def counts(self) -> dict[str, int]:
        return {
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "would_run": self.would_run,
        }

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "plan": self.plan,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "dry_run": self.dry_run,
            "summary": self.counts,
            "failed_steps": self.failed_steps,
            "irreversible_touched": self.irreversible_touched,
            "halted_at": self.halted_at,
            "rollbacks": self.rollbacks,
        }


class Reporter:
    """Append-only run log writer and reader.

    Args:
        path: The log file. Created (with parents) on first write.
    """

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    # ── Writers ─────────────────────────────────────────────────

    def start_run(self, run_id: str, plan: RunPlan, options: RunOptions) -> None:
        self._append_event({
            "type": "run_started",
            "run_id": run_id,
            "timestamp": _now_iso(),
            "plan": plan.name,
            "steps": plan.ids,
            "filtered": plan.filtered,
            "dry_run": options.dry_run,
            "resume_from": options.resume_from,
            "stop_on_failure": options.stop_on_failure,
        })

    def record(self, record: ExecutionRecord) -> None:
        """Append one ExecutionRecord. Durable once this returns."""
        self._append_event({"type": "record", **record.model_dump(mode="json")})
        logger.debug("Recorded %s/%s: %s", record.run_id, record.step_id, record.outcome)

    def capture_output(self, run_id: str, step_id: str, text: str) -> None:
        """Append external-tool output as ``#``-prefixed lines."""
        lines = text.rstrip("\n").splitlines()
        if not lines:
            return
        self._append("".join(f"# {run_id} {step_id} | {line}\n" for line in lines))

    def finish_run(self, result: RunResult) -> None:
        self._append_event({
            "type": "run_finished",
            "run_id": result.run_id,
            "timestamp": _now_iso(),
            "status": result.status,
            "halted_at": result.halted_at,
            "summary": result.counts(),
        })

    def record_rollback(self, result: RollbackResult) -> None:
        self._append_event({"type": "rollback", "timestamp": _now_iso(), **result.to_dict()})

    def _append_event(self, data: dict[str, Any]) -> None:
        self._append(json.dumps(data, ensure_ascii=False) + "\n")

    def _append(self, text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

    # ── Readers ─────────────────────────────────────────────────

    def events(self, run_id: str | None = None) -> Iterator[dict[str, Any]]:
        """Structured events, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return
        with self._path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning("Skipping corrupt log line %d: %s", line_num, e)
                    continue
                if not isinstance(data, dict):
                    continue
                if run_id is None or data.get("run_id") == run_id:
                    yield data

    def records(self, run_id: str) -> list[ExecutionRecord]:
        """All ExecutionRecords of a run, in the order they were written."""
        out = []
        for data in self.events(run_id):
            if data.get("type") != "record":
                continue
            data = {k: v for k, v in data.items() if k != "type"}
            out.append(ExecutionRecord.model_validate(data))
        return out

    def has_run(self, run_id: str) -> bool:
        return any(e.get("type") == "run_started" for e in self.events(run_id))

    def list_runs(self) -> list[RunSummary]:
        """Summaries of every run in the log, oldest first."""
        summaries: dict[str, RunSummary] = {}
        for data in self.events():
            run_id = data.get("run_id")
            if not run_id:
                continue
            if data.get("type") == "run_started":
                summaries[run_id] = RunSummary(run_id=run_id)
            summary = summaries.get(run_id)
            if summary is not None:
                _apply_event(summary, data)
        return list(summaries.values())

    def summarize(self, run_id: str) -> RunSummary:
        """Counts of succeeded/skipped/failed and irreversible steps touched.

        Raises:
            ConfigurationError: The log holds no such run.
        """
        summary = RunSummary(run_id=run_id)
        found = False
        for data in self.events(run_id):
            if data.get("type") == "run_started":
                found = True
            _apply_event(summary, data)
        if not found:
            raise ConfigurationError(f"Unknown run: '{run_id}' (log: {self._path})")
        return summary

    def resume_point(self, run_id: str) -> str | None:
        """First step of ``run_id`` that did not complete, or None.

        Raises:
            ConfigurationError: The log holds no such run.
        """
        planned: list[str] | None = None
        done: set[str] = set()
        for data in self.events(run_id):
            kind = data.get("type")
            if kind == "run_started":
                planned = list(data.get("steps", []))
            elif kind == "record":
                outcome = data.get("outcome")
                reason = data.get("reason")
                if outcome == Outcome.SUCCEEDED or (
                    outcome == Outcome.SKIPPED and reason != SkipReason.DEPENDENCY_FAILED
                ):
                    done.add(data.get("step_id", ""))
        if planned is None:
            raise ConfigurationError(f"Unknown run: '{run_id}' (log: {self._path})")
        return next((s for s in planned if s not in done), None)


def _apply_event(summary: RunSummary, data: dict[str, Any]) -> None:
    kind = data.get("type")
    if kind == "run_started":
        summary.plan = data.get("plan", "")
        summary.started_at = data.get("timestamp", "")
        summary.dry_run = bool(data.get("dry_run"))
    elif kind == "record":
        outcome = data.get("outcome")
        if outcome == Outcome.SUCCEEDED:
            summary.succeeded += 1
        elif outcome == Outcome.SKIPPED:
            summary.skipped += 1
        elif outcome == Outcome.FAILED:
            summary.failed += 1
            summary.failed_steps.append(data.get("step_id", ""))
        elif outcome == Outcome.WOULD_RUN:
            summary.would_run += 1
        attempted = outcome == Outcome.SUCCEEDED or (
            outcome == Outcome.FAILED and data.get("phase") == "apply"
        )
        if attempted and data.get("reversible") is False:
            summary.irreversible_touched.append(data.get("step_id", ""))
    elif kind == "run_finished":
        summary.status = data.get("status", summary.status)
        summary.finished_at = data.get("timestamp", "")
        summary.halted_at = data.get("halted_at")
    elif kind == "rollback":
        summary.rollbacks += 1


def render_summary(summary: RunSummary) -> str:
    """Human-readable end-of-run summary."""
    lines = [
        f"Run {summary.run_id} ({summary.plan or 'unnamed plan'}): {summary.status}",
        f"  succeeded: {summary.succeeded}",
        f"  skipped:   {summary.skipped}",
        f"  failed:    {summary.failed}",
    ]
    if summary.dry_run or summary.would_run:
        lines.append(f"  would run: {summary.would_run}")
    if summary.halted_at:
        lines.append(f"  halted at: {summary.halted_at}")
    if summary.failed_steps:
        lines.append(f"  failed steps: {', '.join(summary.failed_steps)}")
    if summary.irreversible_touched:
        lines.append(
            "  irreversible steps touched: " + ", ".join(summary.irreversible_touched)
        )
    return "\n".join(lines)
