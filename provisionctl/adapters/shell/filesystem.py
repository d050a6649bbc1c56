"""
Filesystem adapter — whole-file writes and line edits.

Replaces the scripts' ``cat > FILE <<EOF``, ``sed -i`` and
``echo ... >> FILE`` with receipt-returning operations the engine can
snapshot and audit.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path

from provisionctl.adapters.base import Adapter, ExecutionContext
from provisionctl.core.models.action import Receipt

logger = logging.getLogger(__name__)


class FilesystemAdapter(Adapter):
    """File operations with receipts.

    Action params:
        kind (str): 'write_file' or 'line_in_file'.
        path (str): Absolute target path.
        content (str): Full content (write_file).
        mode (int): Optional permission bits (write_file).
        line (str): Line to ensure (line_in_file).
        match (str): Optional regex selecting the line to replace.
    """

    @property
    def name(self) -> str:
        return "filesystem"

    def is_available(self) -> bool:
        return True  # filesystem is always available

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        kind = context.params.get("kind", "")
        if kind not in ("write_file", "line_in_file"):
            return False, f"Unknown operation '{kind}'. Valid: line_in_file, write_file"

        path = context.params.get("path", "")
        if not path:
            return False, "Missing required param: 'path'"
        if not os.path.isabs(path):
            return False, f"Path must be absolute: {path}"

        if kind == "write_file" and "content" not in context.params:
            return False, "Missing required param: 'content' for write_file"
        if kind == "line_in_file" and not context.params.get("line"):
            return False, "Missing required param: 'line' for line_in_file"

        match = context.params.get("match")
        if match:
            try:
                re.compile(match)
            except re.error as e:
                return False, f"Invalid regex in 'match': {e}"

        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        kind = context.params["kind"]
        target = Path(context.params["path"])

        try:
            if kind == "write_file":
                return self._write(context, target)
            return self._ensure_line(context, target)
        except PermissionError as e:
            return Receipt.failure(
                adapter=self.name,
                action_id=context.action.id,
                error=f"Permission denied writing {target}: {e.strerror}",
                error_kind="permission_denied",
                metadata={"path": str(target)},
            )
        except OSError as e:
            return Receipt.failure(
                adapter=self.name,
                action_id=context.action.id,
                error=f"Filesystem error: {e}",
                error_kind="step_failed",
                metadata={"path": str(target)},
            )

    def _write(self, ctx: ExecutionContext, target: Path) -> Receipt:
        content: str = ctx.params["content"]
        mode = ctx.params.get("mode")
        if mode is None and target.exists():
            mode = target.stat().st_mode & 0o7777
        _atomic_write(target, content, mode)
        return Receipt.success(
            adapter=self.name,
            action_id=ctx.action.id,
            output=f"Written {len(content)} bytes to {target}",
            metadata={"path": str(target), "size": len(content)},
        )

    def _ensure_line(self, ctx: ExecutionContext, target: Path) -> Receipt:
        line: str = ctx.params["line"]
        match = ctx.params.get("match")

        lines = target.read_text(encoding="utf-8").splitlines() if target.is_file() else []
        if line in lines:
            return Receipt.success(
                adapter=self.name,
                action_id=ctx.action.id,
                output=f"Line already present in {target}",
                metadata={"path": str(target), "changed": False},
            )

        replaced = False
        if match:
            pattern = re.compile(match)
            for i, existing in enumerate(lines):
                if pattern.search(existing):
                    lines[i] = line
                    replaced = True
                    break
        if not replaced:
            lines.append(line)

        mode = target.stat().st_mode & 0o7777 if target.exists() else None
        _atomic_write(target, "\n".join(lines) + "\n", mode)
        verb = "Replaced" if replaced else "Appended"
        return Receipt.success(
            adapter=self.name,
            action_id=ctx.action.id,
            output=f"{verb} line in {target}",
            metadata={"path": str(target), "changed": True, "replaced": replaced},
        )


def _atomic_write(target: Path, content: str, mode: int | None) -> None:
    """Write via temp file + rename so a crash never leaves half a config."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        if mode is not None:
            os.chmod(tmp, mode)
        else:
            os.chmod(tmp, 0o644)
        os.replace(tmp, target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
