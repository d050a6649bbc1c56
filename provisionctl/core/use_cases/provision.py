"""
Provision use case — load a plan, run it, summarize it.

This is the top-level orchestrator: it loads the plan (file or
built-in), resolves the dependency order, checks host preconditions,
wires BackupManager / Reporter / StepExecutor into a PlanRunner and
executes. The full vertical slice from user intent to logged outcome.

Configuration and precondition problems are returned as
``error`` + ``error_kind`` before anything is executed or logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from provisionctl.adapters.registry import AdapterRegistry, default_registry
from provisionctl.core.config.loader import (
    build_registry,
    find_plan_file,
    load_builtin_plan,
    load_plan,
)
from provisionctl.core.engine.checks import CheckEvaluator
from provisionctl.core.engine.executor import StepExecutor
from provisionctl.core.engine.registry import RunPlan
from provisionctl.core.engine.runner import CancelToken, PlanRunner, RunOptions, RunResult
from provisionctl.core.errors import ConfigurationError, PreconditionError
from provisionctl.core.models.plan import PlanFile, Settings
from provisionctl.core.persistence.backup import BackupManager
from provisionctl.core.persistence.reporter import Reporter, RunSummary
from provisionctl.core.preconditions import check_privileges, check_writable

logger = logging.getLogger(__name__)


def load_plan_source(
    config_path: Path | None = None,
    builtin: str | None = None,
    variables: dict[str, str] | None = None,
) -> PlanFile:
    """Load a built-in plan by name, or a plan file (explicit or discovered).

    Raises:
        ConfigurationError: Both sources given, nothing found, or invalid plan.
    """
    if builtin and config_path:
        raise ConfigurationError("Use either --builtin or --config, not both")
    if builtin:
        return load_builtin_plan(builtin, variables)
    return load_plan(config_path, variables)


def resolve_settings(
    config_path: Path | None = None,
    builtin: str | None = None,
) -> Settings:
    """Settings of the selected plan, or defaults when there is no plan at all."""
    if not builtin and config_path is None and find_plan_file() is None:
        return Settings()
    return load_plan_source(config_path, builtin).settings


@dataclass
class ProvisionResult:
    """Result of one provisioning run (or its rejection)."""

    run: RunResult | None = None
    plan: RunPlan | None = None
    summary: RunSummary | None = None
    log_path: Path | None = None
    backup_dir: Path | None = None
    error: str | None = None
    error_kind: str | None = None   # configuration, precondition

    @property
    def exit_code(self) -> int:
        if self.error:
            return 2
        if self.run is None or not self.run.ok:
            return 1
        return 0

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            result["error_kind"] = self.error_kind
            return result

        result["log_path"] = str(self.log_path)
        result["backup_dir"] = str(self.backup_dir)
        if self.run:
            result.update(self.run.to_dict())
        if self.summary:
            result["irreversible_touched"] = self.summary.irreversible_touched
        return result


def run_provision(
    config_path: Path | None = None,
    builtin: str | None = None,
    variables: dict[str, str] | None = None,
    dry_run: bool = False,
    resume_from: str | None = None,
    resume_run: str | None = None,
    only: list[str] | None = None,
    log_path: Path | None = None,
    backup_dir: Path | None = None,
    step_timeout: float | None = None,
    keep_going: bool = False,
    cancel: CancelToken | None = None,
    registry: AdapterRegistry | None = None,
    evaluator: CheckEvaluator | None = None,
) -> ProvisionResult:
    """Execute a plan end to end.

    Args:
        config_path: Optional explicit plan file.
        builtin: Name of a built-in plan instead of a file.
        variables: ``{{ name }}`` overrides.
        dry_run: Evaluate checks and log would-run records only.
        resume_from: Skip every step before this one.
        resume_run: Resume from the first incomplete step of that run.
        only: Restrict the run to these step ids.
        log_path: Overrides ``settings.log_path``.
        backup_dir: Overrides ``settings.backup_dir``.
        step_timeout: Overrides ``settings.step_timeout``.
        keep_going: Don't halt on the first failure.
        cancel: Token the caller may trip to stop at the next step boundary.
        registry: Pre-configured adapter registry (tests pass mocks).
        evaluator: Pre-configured check evaluator.

    Returns:
        ProvisionResult; ``exit_code`` follows the CLI contract.
    """
    result = ProvisionResult()

    # ── Load & resolve ───────────────────────────────────────────
    try:
        plan_file = load_plan_source(config_path, builtin, variables)
        plan = build_registry(plan_file).resolve_order(only=only)
    except ConfigurationError as e:
        return _reject(result, e, "configuration")
    result.plan = plan

    settings = plan_file.settings
    log_path = Path(log_path or settings.log_path)
    backup_dir = Path(backup_dir or settings.backup_dir)
    result.log_path = log_path
    result.backup_dir = backup_dir
    reporter = Reporter(log_path)

    if resume_from and resume_run:
        return _reject(result, ConfigurationError(
            "Use either --resume-from or --resume-run, not both"), "configuration")
    if resume_run:
        try:
            resume_from = reporter.resume_point(resume_run)
        except ConfigurationError as e:
            return _reject(result, e, "configuration")
        if resume_from is None:
            return _reject(result, ConfigurationError(
                f"Run {resume_run} completed every step; nothing to resume"), "configuration")
        logger.info("Resuming run %s from step %s", resume_run, resume_from)

    # ── Host preconditions ───────────────────────────────────────
    try:
        check_privileges(settings.require_root, dry_run=dry_run)
        check_writable(log_path)
        if not dry_run:
            check_writable(backup_dir)
    except PreconditionError as e:
        return _reject(result, e, "precondition")

    # ── Execute ──────────────────────────────────────────────────
    executor = StepExecutor(registry or default_registry(), reporter=reporter)
    runner = PlanRunner(executor, BackupManager(backup_dir), reporter, evaluator=evaluator)
    options = RunOptions(
        dry_run=dry_run,
        stop_on_failure=not keep_going,
        resume_from=resume_from,
        step_timeout=step_timeout if step_timeout is not None else settings.step_timeout,
        cancel=cancel,
    )
    try:
        run = runner.execute(plan, options)
    except ConfigurationError as e:
        return _reject(result, e, "configuration")

    result.run = run
    result.summary = reporter.summarize(run.run_id)
    return result


def _reject(result: ProvisionResult, error: Exception, kind: str) -> ProvisionResult:
    logger.error("%s", error)
    result.error = str(error)
    result.error_kind = kind
    return result


# ── Plan preview ────────────────────────────────────────────────


@dataclass
class PlanPreviewResult:
    """Resolved execution order, without running anything."""

    plan: RunPlan | None = None
    plan_file: PlanFile | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        result: dict = self.plan.to_dict() if self.plan else {}
        if self.plan_file:
            result["description"] = self.plan_file.description
            result["settings"] = self.plan_file.settings.model_dump(mode="json")
        return result


def preview_plan(
    config_path: Path | None = None,
    builtin: str | None = None,
    variables: dict[str, str] | None = None,
    only: list[str] | None = None,
) -> PlanPreviewResult:
    """Load and order a plan, reporting configuration errors."""
    result = PlanPreviewResult()
    try:
        result.plan_file = load_plan_source(config_path, builtin, variables)
        result.plan = build_registry(result.plan_file).resolve_order(only=only)
    except ConfigurationError as e:
        result.error = str(e)
    return result
