"""
Adapter registry — central dispatch for adapter operations.

The StepExecutor never talks to adapters directly — always through the
registry, which resolves the adapter, validates the action, executes
it, and stamps timing. It returns a Receipt and never raises.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from provisionctl.adapters.base import Adapter, ExecutionContext
from provisionctl.core.models.action import Action, Receipt

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Central registry and dispatcher for adapters."""

    def __init__(self) -> None:
        self._adapters: dict[str, Adapter] = {}

    def register(self, adapter: Adapter) -> None:
        """Register an adapter, replacing any with the same name."""
        name = adapter.name
        if name in self._adapters:
            logger.warning("Overwriting existing adapter: %s", name)
        self._adapters[name] = adapter
        logger.debug("Registered adapter: %s", name)

    def unregister(self, name: str) -> None:
        """Remove an adapter from the registry."""
        self._adapters.pop(name, None)

    def get(self, name: str) -> Adapter | None:
        """Look up an adapter by name."""
        return self._adapters.get(name)

    def list_adapters(self) -> list[str]:
        """List all registered adapter names."""
        return list(self._adapters.keys())

    def adapter_status(self) -> dict[str, dict[str, Any]]:
        """Get availability status of all registered adapters."""
        status = {}
        for name, adapter in self._adapters.items():
            try:
                available = adapter.is_available()
            except Exception:
                available = False
            status[name] = {
                "name": name,
                "available": available,
                "type": adapter.__class__.__name__,
            }
        return status

    def execute_action(self, action: Action, timeout: float | None = None) -> Receipt:
        """Execute an action through the appropriate adapter.

        1. Resolve the adapter
        2. Validate the action
        3. Execute
        4. Return a Receipt (never raises)
        """
        start_time = time.monotonic()
        context = ExecutionContext(action=action, timeout=timeout)

        adapter = self._adapters.get(action.adapter)
        if adapter is None:
            return Receipt.failure(
                adapter=action.adapter,
                action_id=action.id,
                error=f"No adapter registered for '{action.adapter}'",
                error_kind="tool_missing",
            )

        try:
            is_valid, error_msg = adapter.validate(context)
        except Exception as e:
            is_valid, error_msg = False, f"Validation error: {e}"
        if not is_valid:
            return Receipt.failure(
                adapter=action.adapter,
                action_id=action.id,
                error=f"Validation failed: {error_msg}",
                error_kind="step_failed",
            )

        try:
            receipt = adapter.execute(context)
        except Exception as e:
            # Adapters should never raise
            logger.error("Adapter %s raised during execution: %s", action.adapter, e)
            receipt = Receipt.failure(
                adapter=action.adapter,
                action_id=action.id,
                error=f"Unexpected error: {e}",
                error_kind="step_failed",
            )

        receipt.duration_ms = int((time.monotonic() - start_time) * 1000)
        return receipt


def default_registry() -> AdapterRegistry:
    """Registry wired with the real host adapters."""
    from provisionctl.adapters.shell.command import ShellCommandAdapter
    from provisionctl.adapters.shell.filesystem import FilesystemAdapter
    from provisionctl.adapters.system.apt import AptPackageAdapter
    from provisionctl.adapters.system.systemd import SystemdServiceAdapter

    registry = AdapterRegistry()
    for adapter in (
        ShellCommandAdapter(),
        FilesystemAdapter(),
        AptPackageAdapter(),
        SystemdServiceAdapter(),
    ):
        registry.register(adapter)
    return registry
