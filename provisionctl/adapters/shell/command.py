"""
Shell command adapter — run external commands and capture output.

This is the most fundamental adapter: installers, builders and
one-off tools (``ubuntu-drivers``, ``ufw``, ``git``, ``make``, ``pip``)
are all reached through it.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from provisionctl.adapters.base import Adapter, ExecutionContext
from provisionctl.adapters.shell.subprocess_runner import run_command
from provisionctl.core.models.action import Receipt

logger = logging.getLogger(__name__)


class ShellCommandAdapter(Adapter):
    """Execute commands and capture output.

    Action params:
        argv (list[str]): Command vector, or
        script (str): Shell snippet run through ``/bin/sh -c``.
        env (dict): Extra environment variables.
        cwd (str): Working directory.
    """

    @property
    def name(self) -> str:
        return "shell"

    def is_available(self) -> bool:
        return shutil.which("sh") is not None

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        argv = context.params.get("argv") or []
        script = context.params.get("script", "")
        if not argv and not script:
            return False, "Missing required param: 'argv' or 'script'"

        cwd = context.params.get("cwd")
        if cwd and not Path(cwd).is_dir():
            return False, f"Working directory does not exist: {cwd}"

        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        return run_command(
            self.name,
            context.action.id,
            argv=context.params.get("argv") or None,
            script=context.params.get("script", ""),
            timeout=context.timeout,
            env_overrides=context.params.get("env") or None,
            cwd=context.params.get("cwd"),
        )
