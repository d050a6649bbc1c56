"""
Built-in plans shipped with provisionctl.

Each plan is a regular ``provision.yml`` under ``plans/`` and goes
through the same loader as user plans::

    from provisionctl.core.data import builtin_plan_path, builtin_plan_names

    builtin_plan_names()                  # ['ai-workstation', 'snap-cleanup']
    builtin_plan_path("ai-workstation")   # .../plans/ai-workstation.yml
"""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

_PLANS_DIR = Path(__file__).parent / "plans"


def builtin_plan_names() -> list[str]:
    """Names of every shipped plan, sorted."""
    if not _PLANS_DIR.is_dir():
        logger.warning("Built-in plans directory not found: %s", _PLANS_DIR)
        return []
    return sorted(p.stem for p in _PLANS_DIR.glob("*.yml"))


def builtin_plan_path(name: str) -> Path | None:
    """Path of a shipped plan, or None if there is no such plan."""
    path = _PLANS_DIR / f"{name}.yml"
    return path if path.is_file() else None
