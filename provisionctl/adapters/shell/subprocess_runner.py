"""
Subprocess runner — the single place where adapters start child processes.

Every failure is classified so the executor can raise the right
StepExecutionError:

    binary not found / exit 127          → tool_missing
    EACCES / exit 126 / "permission denied" in stderr → permission_denied
    TimeoutExpired                        → timeout
    any other non-zero exit               → tool_failed
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from collections.abc import Sequence

from provisionctl.core.models.action import Receipt

logger = logging.getLogger(__name__)

# Keep captured output bounded; the run log is not a transcript store.
_OUTPUT_TAIL = 4000

_PERMISSION_MARKERS = (
    "permission denied",
    "are you root",
    "must be run as root",
    "operation not permitted",
    "interactive authentication required",
)


def _tail(text: str | None) -> str:
    if not text:
        return ""
    return text[-_OUTPUT_TAIL:].strip()


def run_command(
    adapter: str,
    action_id: str,
    *,
    argv: Sequence[str] | None = None,
    script: str = "",
    timeout: float | None = None,
    env_overrides: dict[str, str] | None = None,
    cwd: str | None = None,
) -> Receipt:
    """Run ``argv`` (or ``script`` through ``/bin/sh -c``) and classify the result.

    Args:
        adapter: Name of the calling adapter (stamped on the receipt).
        action_id: The step id.
        argv: Command vector. Mutually exclusive with ``script``.
        script: Shell snippet, for pipelines and redirections.
        timeout: Seconds before the child is killed; ``None`` blocks.
        env_overrides: Extra environment variables.
        cwd: Working directory.

    Returns:
        A Receipt; never raises.
    """
    cmd: list[str] = ["/bin/sh", "-c", script] if script else list(argv or [])
    display = script or " ".join(cmd)
    if not cmd:
        return Receipt.failure(adapter, action_id, "Empty command", error_kind="step_failed")

    env = os.environ.copy()
    if env_overrides:
        env.update(env_overrides)

    logger.debug("Executing: %s (cwd=%s, timeout=%s)", display, cwd, timeout)
    start = time.monotonic()

    try:
        # Own session, so a timeout can take down everything the step spawned
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            env=env,
            cwd=cwd,
            start_new_session=True,
        )
    except FileNotFoundError as e:
        # Either the binary or the cwd is missing
        if cwd and not os.path.isdir(cwd):
            return Receipt.failure(
                adapter, action_id, f"Working directory does not exist: {cwd}",
                error_kind="step_failed", metadata={"command": display},
            )
        return Receipt.failure(
            adapter, action_id, f"Command not found: {cmd[0]} ({e.strerror})",
            error_kind="tool_missing", metadata={"command": display},
        )
    except PermissionError as e:
        return Receipt.failure(
            adapter, action_id, f"Permission denied executing {cmd[0]}: {e.strerror}",
            error_kind="permission_denied", metadata={"command": display},
        )
    except OSError as e:
        return Receipt.failure(
            adapter, action_id, f"Command execution error: {e}",
            error_kind="step_failed", metadata={"command": display},
        )

    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_group(proc)
        out, _err = proc.communicate()
        return Receipt.failure(
            adapter, action_id, f"Command timed out after {timeout}s",
            error_kind="timeout", output=_tail(out),
            metadata={"command": display, "timeout": timeout},
        )
    except BaseException:
        _kill_group(proc)
        proc.wait()
        raise

    elapsed_ms = int((time.monotonic() - start) * 1000)
    stdout = _tail(out)
    stderr = _tail(err)
    metadata = {"command": display, "return_code": proc.returncode, "stderr": stderr}

    if proc.returncode == 0:
        return Receipt.success(
            adapter, action_id, output=stdout, duration_ms=elapsed_ms, metadata=metadata,
        )

    if proc.returncode == 127:
        kind = "tool_missing"
    elif proc.returncode == 126 or any(m in stderr.lower() for m in _PERMISSION_MARKERS):
        kind = "permission_denied"
    else:
        kind = "tool_failed"

    return Receipt.failure(
        adapter,
        action_id,
        error=stderr or f"Command exited with code {proc.returncode}",
        error_kind=kind,
        output=stdout,
        duration_ms=elapsed_ms,
        metadata=metadata,
    )


def _kill_group(proc: subprocess.Popen) -> None:
    """SIGKILL the child's whole process group, background jobs included."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def probe(argv: Sequence[str], timeout: float = 30) -> tuple[int, str]:
    """Run a read-only probe command and return ``(exit_code, stdout)``.

    Missing binaries report 127 and timeouts report 124, the same codes
    a shell would use, so callers can treat them as "not satisfied".
    """
    try:
        result = subprocess.run(
            list(argv),
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError:
        return 127, ""
    except PermissionError:
        return 126, ""
    except subprocess.TimeoutExpired:
        logger.warning("Probe timed out after %ss: %s", timeout, " ".join(argv))
        return 124, ""
    return result.returncode, result.stdout
