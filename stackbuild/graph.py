from __future__ import annotations

import heapq
from typing import Dict, Iterable, Iterator, List, Sequence, Set, Tuple

from .errors import CycleDetected, DefinitionError
from .models import Stage


class StageGraph:
    """Validated, topologically ordered stages.

    Use :meth:`build`; the constructor assumes its input is already sorted.
    """

    def __init__(self, stages: Sequence[Stage]) -> None:
        self._stages: Tuple[Stage, ...] = tuple(stages)
        self._by_name: Dict[str, Stage] = {stage.name: stage for stage in self._stages}
        self._children: Dict[str, List[str]] = {stage.name: [] for stage in self._stages}
        for stage in self._stages:
            for dependency in dict.fromkeys(stage.depends_on):
                self._children[dependency].append(stage.name)

    @classmethod
    def build(cls, stage_defs: Iterable[Stage]) -> "StageGraph":
        """Sort ``stage_defs`` with Kahn's algorithm.

        Stages that become ready at the same time run in declaration order, so
        the same definition always yields the same order.
        """

        declared = list(stage_defs)
        position: Dict[str, int] = {}
        for index, stage in enumerate(declared):
            if stage.name in position:
                raise DefinitionError(f"Duplicate stage name {stage.name!r}")
            position[stage.name] = index

        in_degree: Dict[str, int] = {stage.name: 0 for stage in declared}
        children: Dict[str, List[str]] = {stage.name: [] for stage in declared}
        for stage in declared:
            for dependency in dict.fromkeys(stage.depends_on):
                if dependency not in position:
                    raise DefinitionError(f"Stage {stage.name} depends on unknown stage {dependency!r}")
                in_degree[stage.name] += 1
                children[dependency].append(stage.name)

        ready = [position[name] for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: List[Stage] = []
        while ready:
            stage = declared[heapq.heappop(ready)]
            ordered.append(stage)
            for child in children[stage.name]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, position[child])

        if len(ordered) != len(declared):
            remaining = [stage.name for stage in declared if in_degree[stage.name] > 0]
            raise CycleDetected(remaining)
        return cls(ordered)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    def names(self) -> List[str]:
        return [stage.name for stage in self._stages]

    def get(self, name: str) -> Stage:
        try:
            return self._by_name[name]
        except KeyError as exc:
            raise DefinitionError(f"Unknown stage {name!r}") from exc

    def dependents(self, name: str) -> Set[str]:
        """Return every stage that transitively depends on ``name``."""

        found: Set[str] = set()
        pending = list(self._children[name])
        while pending:
            child = pending.pop()
            if child not in found:
                found.add(child)
                pending.extend(self._children[child])
        return found

    def ancestors(self, name: str) -> Set[str]:
        found: Set[str] = set()
        pending = list(self.get(name).depends_on)
        while pending:
            parent = pending.pop()
            if parent not in found:
                found.add(parent)
                pending.extend(self._by_name[parent].depends_on)
        return found

    def independent(self, first: str, second: str) -> bool:
        """``True`` when neither stage transitively depends on the other."""

        return first != second and first not in self.ancestors(second) and second not in self.ancestors(first)
