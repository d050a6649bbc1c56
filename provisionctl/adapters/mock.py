"""
Mock adapter — stands in for shell, filesystem, package or service.

Engine tests register one per adapter name so no step ever reaches the
host. Per step id a mock can fail with a chosen ``error_kind``, answer
with a canned Receipt, or run an effect that plays the part of the
host change (flip a fake host answer, create a file) so that the step's
check holds on the next run.
"""

from __future__ import annotations

from collections.abc import Callable

from provisionctl.adapters.base import Adapter, ExecutionContext
from provisionctl.core.models.action import Receipt

Effect = Callable[[ExecutionContext], None]


class MockAdapter(Adapter):
    """Records every step it is asked to apply; succeeds unless told otherwise."""

    def __init__(self, adapter_name: str = "mock", available: bool = True):
        self._name = adapter_name
        self._available = available
        self._responses: dict[str, Receipt] = {}
        self._effects: dict[str, Effect] = {}
        self._call_log: list[ExecutionContext] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_log(self) -> list[ExecutionContext]:
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    @property
    def called_ids(self) -> list[str]:
        """Step ids in the order they were applied."""
        return [ctx.action.id for ctx in self._call_log]

    def is_available(self) -> bool:
        return self._available

    # ── Scripting ───────────────────────────────────────────────

    def set_response(self, step_id: str, receipt: Receipt) -> None:
        self._responses[step_id] = receipt

    def set_failure(
        self,
        step_id: str,
        error: str = "Mock failure",
        error_kind: str = "tool_failed",
    ) -> None:
        """Make ``step_id`` fail the way a real tool would (see ERROR_KINDS)."""
        self._responses[step_id] = Receipt.failure(
            adapter=self._name,
            action_id=step_id,
            error=error,
            error_kind=error_kind,
        )

    def on_success(self, step_id: str, effect: Effect) -> None:
        """Run ``effect`` each time ``step_id`` is applied successfully."""
        self._effects[step_id] = effect

    def clear(self, step_id: str) -> None:
        """Forget the scripted response for one step; it succeeds again."""
        self._responses.pop(step_id, None)

    def reset(self) -> None:
        self._call_log.clear()
        self._responses.clear()
        self._effects.clear()

    # ── Adapter protocol ────────────────────────────────────────

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        self._call_log.append(context)
        step_id = context.action.id

        receipt = self._responses.get(step_id) or Receipt.success(
            adapter=self._name,
            action_id=step_id,
            output=f"[mock {self._name}] {step_id}",
            metadata={"mock": True, "params": dict(context.action.params)},
        )
        if receipt.ok and step_id in self._effects:
            self._effects[step_id](context)
        return receipt
