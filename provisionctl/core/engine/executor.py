"""
Step executor — runs one step's action exactly once.

Builds an adapter Action from the step, dispatches it through the
AdapterRegistry, forwards captured output to the run log, and turns
a failed Receipt into the matching typed StepExecutionError:

    tool_missing       → ExternalToolMissing
    tool_failed        → ExternalToolFailed
    permission_denied  → PermissionDenied
    timeout            → StepTimeout
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from provisionctl.adapters.registry import AdapterRegistry
from provisionctl.core.errors import ERROR_KINDS, StepExecutionError
from provisionctl.core.models.action import Action, Receipt
from provisionctl.core.models.step import Step

if TYPE_CHECKING:
    from provisionctl.core.persistence.reporter import Reporter

logger = logging.getLogger(__name__)


class StepExecutor:
    """Apply steps through the adapter registry.

    Args:
        registry: Adapter dispatch.
        reporter: Optional run log; receives captured tool output.
    """

    def __init__(self, registry: AdapterRegistry, reporter: Reporter | None = None):
        self._registry = registry
        self._reporter = reporter

    def apply(self, step: Step, run_id: str = "", timeout: float | None = None) -> Receipt:
        """Execute ``step.action`` once.

        Returns:
            The success Receipt.

        Raises:
            StepExecutionError: Any failure, typed by its error kind.
        """
        action = Action(
            id=step.id,
            adapter=step.adapter,
            run_id=run_id,
            params=step.action.model_dump(mode="json"),
        )
        logger.info("→ %s: %s", step.id, step.action.display)
        receipt = self._registry.execute_action(action, timeout=timeout)

        self._capture(run_id, step.id, receipt)

        if receipt.ok:
            return receipt

        error_cls = ERROR_KINDS.get(receipt.error_kind or "", StepExecutionError)
        raise error_cls(
            receipt.error or "Step failed",
            step_id=step.id,
            output=receipt.output,
        )

    def _capture(self, run_id: str, step_id: str, receipt: Receipt) -> None:
        if self._reporter is None or not run_id:
            return
        stderr = receipt.metadata.get("stderr", "")
        for text in (receipt.output, stderr):
            if text:
                self._reporter.capture_output(run_id, step_id, text)
