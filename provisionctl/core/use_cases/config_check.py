"""
Config check use case — validate a plan and report issues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from provisionctl.core.config.loader import build_registry, find_plan_file
from provisionctl.core.errors import ConfigurationError
from provisionctl.core.models.plan import PlanFile
from provisionctl.core.models.step import LineInFileAction, WriteFileAction
from provisionctl.core.use_cases.provision import load_plan_source


@dataclass
class ConfigCheckResult:
    """Result of plan validation."""

    valid: bool = False
    plan: PlanFile | None = None
    source: str | None = None
    order: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "source": self.source,
            "errors": self.errors,
            "warnings": self.warnings,
            "plan_name": self.plan.name if self.plan else None,
            "step_count": len(self.plan.steps) if self.plan else 0,
            "order": self.order,
        }


def check_config(
    config_path: Path | None = None,
    builtin: str | None = None,
    variables: dict[str, str] | None = None,
) -> ConfigCheckResult:
    """Validate a plan and report issues.

    Errors are what would make ``run`` exit 2. Warnings flag steps that
    will work but defeat idempotency or rollback.
    """
    result = ConfigCheckResult()

    if builtin:
        result.source = f"builtin:{builtin}"
    else:
        config_path = config_path or find_plan_file()
        result.source = str(config_path) if config_path else None

    # Load, register, order
    try:
        plan = load_plan_source(config_path, builtin, variables)
        result.plan = plan
        result.order = build_registry(plan).resolve_order().ids
    except ConfigurationError as e:
        result.errors.append(str(e))
        return result

    if not plan.steps:
        result.warnings.append("Plan has no steps.")

    for step in plan.steps:
        if step.check is None:
            result.warnings.append(
                f"Step '{step.id}' has no check; it runs on every invocation."
            )

        action = step.action
        if isinstance(action, (WriteFileAction, LineInFileAction)):
            if action.path not in step.mutates_paths:
                result.warnings.append(
                    f"Step '{step.id}' writes {action.path} but does not list it in "
                    "mutates_paths; rollback cannot restore it."
                )

        if not step.reversible and step.mutates_paths:
            result.warnings.append(
                f"Step '{step.id}' is irreversible; its snapshots are kept but "
                "rollback stops there."
            )

    result.valid = len(result.errors) == 0
    return result
