"""
Step registry — ordered, named steps with declared dependencies.

``resolve_order()`` turns the registry into an immutable RunPlan using
Kahn's algorithm. Steps with no ordering constraint between them keep
their registration order, so the same registry always yields the same
plan.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from provisionctl.core.errors import CyclicDependencyError, DuplicateStepError, UnknownStepError
from provisionctl.core.models.step import Step

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunPlan:
    """The topologically ordered steps selected for one run."""

    steps: tuple[Step, ...]
    name: str = ""
    filtered: bool = False

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __contains__(self, step_id: object) -> bool:
        return any(s.id == step_id for s in self.steps)

    @property
    def ids(self) -> list[str]:
        return [s.id for s in self.steps]

    def get(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "filtered": self.filtered,
            "steps": [
                {
                    "id": s.id,
                    "description": s.description,
                    "depends_on": s.depends_on,
                    "action": s.action.display,
                    "reversible": s.reversible,
                    "mutates_paths": s.mutates_paths,
                }
                for s in self.steps
            ],
        }


class StepRegistry:
    """Registration-ordered collection of steps."""

    def __init__(self, name: str = ""):
        self.name = name
        self._steps: dict[str, Step] = {}

    def register(self, step: Step) -> None:
        """Add a step.

        Raises:
            DuplicateStepError: A step with the same id is already registered.
        """
        if step.id in self._steps:
            raise DuplicateStepError(step.id)
        self._steps[step.id] = step
        logger.debug("Registered step: %s", step.id)

    def register_all(self, steps: Iterable[Step]) -> None:
        for step in steps:
            self.register(step)

    def get(self, step_id: str) -> Step | None:
        return self._steps.get(step_id)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def ids(self) -> list[str]:
        return list(self._steps)

    def resolve_order(self, only: Iterable[str] | None = None) -> RunPlan:
        """Topologically sort the registry into a RunPlan.

        Args:
            only: Optional subset of step ids. Dependencies on steps
                outside the subset are treated as already satisfied.

        Raises:
            UnknownStepError: A dependency or ``only`` id is not registered.
            CyclicDependencyError: The dependency graph has a cycle.
        """
        steps = list(self._steps.values())
        index = {s.id: i for i, s in enumerate(steps)}

        for step in steps:
            for dep in step.depends_on:
                if dep not in index:
                    raise UnknownStepError(dep, referenced_by=step.id)

        # Kahn's algorithm; the heap keeps ties in registration order
        in_degree = {s.id: len(s.depends_on) for s in steps}
        dependents: dict[str, list[str]] = {s.id: [] for s in steps}
        for step in steps:
            for dep in step.depends_on:
                dependents[dep].append(step.id)

        ready = [index[sid] for sid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        ordered: list[Step] = []
        while ready:
            step = steps[heapq.heappop(ready)]
            ordered.append(step)
            for successor in dependents[step.id]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    heapq.heappush(ready, index[successor])

        if len(ordered) < len(steps):
            remaining = {sid for sid, deg in in_degree.items() if deg > 0}
            raise CyclicDependencyError(self._find_cycle(remaining, index))

        if only is None:
            return RunPlan(steps=tuple(ordered), name=self.name)

        selected = list(dict.fromkeys(only))
        for sid in selected:
            if sid not in index:
                raise UnknownStepError(sid)
        wanted = set(selected)
        return RunPlan(
            steps=tuple(s for s in ordered if s.id in wanted),
            name=self.name,
            filtered=True,
        )

    def _find_cycle(self, remaining: set[str], index: dict[str, int]) -> list[str]:
        """Walk dependency edges inside the unresolved set until a node repeats.

        Every unresolved step has at least one unresolved dependency, so
        the walk cannot dead-end.
        """
        current = min(remaining, key=index.__getitem__)
        path: list[str] = []
        seen: dict[str, int] = {}
        while current not in seen:
            seen[current] = len(path)
            path.append(current)
            current = next(
                dep for dep in self._steps[current].depends_on if dep in remaining
            )
        return path[seen[current]:] + [current]
