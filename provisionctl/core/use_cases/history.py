"""
History use cases — list past runs and summarize one, from the run log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from provisionctl.core.errors import ConfigurationError
from provisionctl.core.persistence.reporter import Reporter, RunSummary, render_summary


@dataclass
class RunsResult:
    """Every run recorded in a log file."""

    log_path: Path | None = None
    runs: list[RunSummary] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {
            "log_path": str(self.log_path),
            "runs": [r.to_dict() for r in self.runs],
        }


def list_runs(log_path: Path) -> RunsResult:
    result = RunsResult(log_path=log_path)
    try:
        result.runs = Reporter(log_path).list_runs()
    except OSError as e:
        result.error = f"Cannot read {log_path}: {e}"
    return result


@dataclass
class SummaryResult:
    """Summary of a single run."""

    summary: RunSummary | None = None
    error: str | None = None

    @property
    def text(self) -> str:
        return render_summary(self.summary) if self.summary else ""

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return self.summary.to_dict() if self.summary else {}


def run_summary(run_id: str, log_path: Path) -> SummaryResult:
    """Rebuild the summary of ``run_id`` from the log."""
    result = SummaryResult()
    try:
        result.summary = Reporter(log_path).summarize(run_id)
    except ConfigurationError as e:
        result.error = str(e)
    except OSError as e:
        result.error = f"Cannot read {log_path}: {e}"
    return result
