"""
Service adapter — systemctl enable/disable/start/stop/restart/daemon-reload.
"""

from __future__ import annotations

import logging
import shutil

from provisionctl.adapters.base import Adapter, ExecutionContext
from provisionctl.adapters.shell.subprocess_runner import run_command
from provisionctl.core.models.action import Receipt

logger = logging.getLogger(__name__)

_OPERATIONS = {"enable", "disable", "start", "stop", "restart", "daemon-reload"}


def build_systemctl_command(operation: str, name: str = "", now: bool = False) -> list[str]:
    """Build the systemctl command line for an operation."""
    if operation == "daemon-reload":
        return ["systemctl", "daemon-reload"]
    cmd = ["systemctl", operation]
    if now and operation in ("enable", "disable"):
        cmd.append("--now")
    return cmd + [name]


class SystemdServiceAdapter(Adapter):
    """Toggle systemd units.

    Action params:
        name (str): Unit name (e.g. 'zramswap.service').
        operation (str): One of enable, disable, start, stop, restart, daemon-reload.
        now (bool): Pass ``--now`` with enable/disable.
    """

    @property
    def name(self) -> str:
        return "service"

    def is_available(self) -> bool:
        return shutil.which("systemctl") is not None

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        operation = context.params.get("operation", "enable")
        if operation not in _OPERATIONS:
            return False, f"Unknown service operation '{operation}'"
        if operation != "daemon-reload" and not context.params.get("name"):
            return False, "Missing required param: 'name'"
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        cmd = build_systemctl_command(
            context.params.get("operation", "enable"),
            context.params.get("name", ""),
            bool(context.params.get("now", False)),
        )
        return run_command(self.name, context.action.id, argv=cmd, timeout=context.timeout)
