"""
Configuration loader — reads provision.yml into a validated PlanFile.

This is the primary entry point for loading plans. It reads YAML,
substitutes ``{{ variable }}`` placeholders, validates against the
Pydantic models and returns typed domain objects. Built-in plans go
through the same path.

Variable precedence (highest first):
    --var on the command line  >  built-ins (invoking_user)  >  ``variables:`` block
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from provisionctl.core.data import builtin_plan_names, builtin_plan_path
from provisionctl.core.engine.registry import StepRegistry
from provisionctl.core.errors import ConfigurationError
from provisionctl.core.models.plan import PlanFile

logger = logging.getLogger(__name__)

# Default config filenames, in lookup order
PLAN_CONFIG_FILES = ("provision.yml", "provision.yaml")

_VAR_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def find_plan_file(start_dir: Path | None = None) -> Path | None:
    """Search for provision.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to the plan file, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        for name in PLAN_CONFIG_FILES:
            candidate = current / name
            if candidate.is_file():
                return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_plan(path: Path | None = None, variables: dict[str, str] | None = None) -> PlanFile:
    """Load and validate a plan file.

    Args:
        path: Explicit path to the plan. If None, searches upward.
        variables: Overrides for the plan's ``variables:`` block.

    Returns:
        Validated PlanFile.

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    if path is None:
        path = find_plan_file()

    if path is None:
        raise ConfigurationError(
            f"No {PLAN_CONFIG_FILES[0]} found. "
            "Use --builtin ai-workstation, or specify --config."
        )

    if not path.is_file():
        raise ConfigurationError(f"Plan file not found: {path}")

    logger.debug("Loading plan from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    return parse_plan(data, source=str(path), variables=variables)


def load_builtin_plan(name: str, variables: dict[str, str] | None = None) -> PlanFile:
    """Load one of the plans shipped with provisionctl."""
    path = builtin_plan_path(name)
    if path is None:
        known = ", ".join(builtin_plan_names()) or "none"
        raise ConfigurationError(f"Unknown built-in plan '{name}' (available: {known})")
    return load_plan(path, variables=variables)


def parse_plan(
    data: dict[str, Any],
    source: str = "<plan>",
    variables: dict[str, str] | None = None,
) -> PlanFile:
    """Substitute variables in raw plan data and validate it."""
    declared = data.get("variables") or {}
    if not isinstance(declared, dict):
        raise ConfigurationError(f"'variables' must be a mapping in {source}")

    merged = {str(k): str(v) for k, v in declared.items()}
    merged.update(variables or {})

    rendered = {
        key: (value if key == "variables" else _substitute(value, merged, source))
        for key, value in data.items()
    }
    rendered["variables"] = merged

    try:
        plan = PlanFile.model_validate(rendered)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid plan {source}:\n{e}") from e

    logger.info("Loaded plan '%s' with %d steps", plan.name, len(plan.steps))
    return plan


def build_registry(plan: PlanFile) -> StepRegistry:
    """Register the plan's steps in file order.

    Raises:
        DuplicateStepError: Two steps share an id.
    """
    registry = StepRegistry(name=plan.name)
    registry.register_all(plan.steps)
    return registry


def _substitute(value: Any, variables: dict[str, str], source: str) -> Any:
    if isinstance(value, str):
        def repl(m: re.Match[str]) -> str:
            name = m.group(1)
            if name not in variables:
                raise ConfigurationError(f"Undefined variable '{{{{ {name} }}}}' in {source}")
            return variables[name]

        return _VAR_RE.sub(repl, value)
    if isinstance(value, list):
        return [_substitute(v, variables, source) for v in value]
    if isinstance(value, dict):
        return {k: _substitute(v, variables, source) for k, v in value.items()}
    return value
