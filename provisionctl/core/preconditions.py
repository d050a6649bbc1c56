"""
Host preconditions — checked before a single step runs.

A failure here raises PreconditionError and the CLI exits 2 without
touching the run log or the backup area.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from provisionctl.core.errors import PreconditionError

logger = logging.getLogger(__name__)


def is_root() -> bool:
    return os.geteuid() == 0


def check_privileges(require_root: bool, dry_run: bool = False) -> None:
    """Real runs of a root-requiring plan need euid 0. Dry runs never do."""
    if not require_root or dry_run:
        return
    if not is_root():
        raise PreconditionError(
            "This plan requires root privileges. Run with sudo, or use --dry-run."
        )


def check_writable(*paths: Path) -> None:
    """Each path must be writable, or creatable under its nearest existing parent."""
    for path in paths:
        target = Path(path)
        probe = target
        while not probe.exists():
            if probe.parent == probe:
                break
            probe = probe.parent
        if probe.exists() and probe.is_dir() and probe != target:
            ok = os.access(probe, os.W_OK | os.X_OK)
        else:
            ok = os.access(probe, os.W_OK)
        if not ok:
            raise PreconditionError(f"Cannot write to {target} (no write access to {probe})")
        logger.debug("Writable: %s (via %s)", target, probe)
