"""
Check evaluation — the idempotency predicates.

Every check is read-only: it inspects files or runs query commands
(``dpkg-query``, ``systemctl is-enabled``, ``sysctl -n``) and answers
"does the desired state already hold?". A probe that cannot run
(tool missing, timeout) answers "no", so the step runs and surfaces
the real error itself.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from pathlib import Path

from provisionctl.adapters.shell.subprocess_runner import probe
from provisionctl.core.errors import PermissionDenied, StepExecutionError
from provisionctl.core.models.step import (
    AllOfCheck,
    Check,
    CommandCheck,
    FileContentCheck,
    LineInFileCheck,
    PackagesInstalledCheck,
    PathExistsCheck,
    ServiceActiveCheck,
    ServiceEnabledCheck,
    SysctlCheck,
)

logger = logging.getLogger(__name__)

ProbeFn = Callable[[Sequence[str]], tuple[int, str]]


class CheckEvaluator:
    """Evaluate declarative checks against the live system.

    Args:
        probe_fn: Runs a read-only command and returns ``(exit_code, stdout)``.
            Tests inject a fake to simulate dpkg/systemctl/sysctl answers.
    """

    def __init__(self, probe_fn: ProbeFn = probe):
        self._probe = probe_fn

    def is_satisfied(self, check: Check | None) -> bool:
        """Return True if the desired state already holds.

        Raises:
            PermissionDenied: A file the check must read is unreadable.
        """
        if check is None:
            return False

        if isinstance(check, AllOfCheck):
            return all(self.is_satisfied(c) for c in check.checks)
        if isinstance(check, PathExistsCheck):
            return os.path.lexists(check.path)
        if isinstance(check, FileContentCheck):
            text = _read_text(check.path)
            return text is not None and text == check.content
        if isinstance(check, LineInFileCheck):
            text = _read_text(check.path)
            return text is not None and check.line in text.splitlines()
        if isinstance(check, CommandCheck):
            argv = ["/bin/sh", "-c", check.script] if check.script else check.argv
            return self._probe(argv)[0] == 0
        if isinstance(check, PackagesInstalledCheck):
            return self._packages_installed(check.packages)
        if isinstance(check, ServiceEnabledCheck):
            return self._probe(["systemctl", "is-enabled", "--quiet", check.name])[0] == 0
        if isinstance(check, ServiceActiveCheck):
            return self._probe(["systemctl", "is-active", "--quiet", check.name])[0] == 0
        if isinstance(check, SysctlCheck):
            code, out = self._probe(["sysctl", "-n", check.key])
            return code == 0 and out.split() == check.value.split()

        raise StepExecutionError(f"Unsupported check kind: {check.kind}")

    def _packages_installed(self, packages: list[str]) -> bool:
        code, out = self._probe(["dpkg-query", "-W", "-f=${Status}\\n", *packages])
        if code != 0:
            return False
        statuses = [line.strip() for line in out.splitlines() if line.strip()]
        return len(statuses) == len(packages) and all(
            s.endswith("install ok installed") for s in statuses
        )


def _read_text(path: str) -> str | None:
    """Read a file for comparison; None if it does not exist."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except IsADirectoryError:
        return None
    except PermissionError as e:
        raise PermissionDenied(f"Cannot read {path} to evaluate check: {e.strerror}") from e
    except UnicodeDecodeError:
        logger.debug("Check target %s is not UTF-8 text", path)
        return None
