"""
Package adapter — apt-get install/remove/purge.

Always non-interactive: a provisioning run must never block on a
debconf prompt.
"""

from __future__ import annotations

import logging
import shutil

from provisionctl.adapters.base import Adapter, ExecutionContext
from provisionctl.adapters.shell.subprocess_runner import run_command
from provisionctl.core.models.action import Receipt

logger = logging.getLogger(__name__)

_APT_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
    "NEEDRESTART_MODE": "a",
}


def build_apt_command(operation: str, packages: list[str]) -> list[str]:
    """Build the apt-get command line for an operation."""
    cmd = ["apt-get", "-y", "-o", "Dpkg::Options::=--force-confold"]
    if operation == "install":
        cmd += ["install", "--no-install-recommends"]
    else:
        cmd.append(operation)
    return cmd + list(packages)


class AptPackageAdapter(Adapter):
    """Install or remove Debian packages.

    Action params:
        packages (list[str]): Package names.
        operation (str): 'install', 'remove' or 'purge'.
    """

    @property
    def name(self) -> str:
        return "package"

    def is_available(self) -> bool:
        return shutil.which("apt-get") is not None

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        packages = context.params.get("packages") or []
        if not packages:
            return False, "Missing required param: 'packages'"
        operation = context.params.get("operation", "install")
        if operation not in ("install", "remove", "purge"):
            return False, f"Unknown package operation '{operation}'"
        bad = [p for p in packages if p.startswith("-")]
        if bad:
            return False, f"Package names must not look like options: {', '.join(bad)}"
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        cmd = build_apt_command(
            context.params.get("operation", "install"),
            context.params["packages"],
        )
        return run_command(
            self.name,
            context.action.id,
            argv=cmd,
            timeout=context.timeout,
            env_overrides=_APT_ENV,
        )
