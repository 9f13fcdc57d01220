# arch_provision/graph.py

from typing import Dict, List, Optional, Sequence

from arch_provision.models import Stage
from arch_provision.utils.exceptions import CycleError, DuplicateStageError, UnknownDependencyError


class StageGraph:
    """
    Dependency graph over stages.

    order() is a topological sort that breaks ties by input order, so the
    same stage list always produces the same execution order.
    """

    def __init__(self, stages: Sequence[Stage]):
        self._stages: List[Stage] = list(stages)
        self._by_name: Dict[str, Stage] = {}
        for stage in self._stages:
            if stage.name in self._by_name:
                raise DuplicateStageError(stage.name)
            self._by_name[stage.name] = stage

        for stage in self._stages:
            for dependency in stage.depends_on:
                if dependency not in self._by_name:
                    raise UnknownDependencyError(stage.name, dependency)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __getitem__(self, name: str) -> Stage:
        return self._by_name[name]

    @property
    def names(self) -> List[str]:
        return [stage.name for stage in self._stages]

    def order(self) -> List[Stage]:
        """Stages with every stage placed after all of its dependencies."""
        ordered: List[Stage] = []
        done = set()
        remaining = list(self._stages)

        while remaining:
            for index, stage in enumerate(remaining):
                if all(dependency in done for dependency in stage.depends_on):
                    ordered.append(stage)
                    done.add(stage.name)
                    del remaining[index]
                    break
            else:
                raise CycleError(self._find_cycle([stage.name for stage in remaining]))

        return ordered

    def _find_cycle(self, candidates: List[str]) -> List[str]:
        """Walks dependencies among the unordered stages until a name repeats."""
        candidate_set = set(candidates)
        path: List[str] = []
        current: Optional[str] = candidates[0]
        while current not in path:
            path.append(current)
            current = next(d for d in self._by_name[current].depends_on if d in candidate_set)
        return path[path.index(current):] + [current]


def order(stages: Sequence[Stage]) -> List[Stage]:
    """Validates the dependencies of `stages` and returns them in execution order."""
    return StageGraph(stages).order()
