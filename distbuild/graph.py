"""Target registration and dependency resolution."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Tuple

from .actions import Action
from .errors import CyclicDependencyError, DuplicateTargetError, UnknownTargetError


@dataclass(frozen=True, slots=True)
class Target:
    """A named buildable unit.

    ``inputs``, ``outputs`` and ``directories`` hold path templates that are
    resolved against the active build mode when the target executes. A target
    without an action only groups its prerequisites.
    """

    name: str
    deps: Tuple[str, ...] = ()
    action: Action | None = None
    outputs: Tuple[str, ...] = ()
    inputs: Tuple[str, ...] = ()
    directories: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    description: str | None = None

    @property
    def is_group(self) -> bool:
        return self.action is None


@dataclass(slots=True)
class ExecutionPlan:
    """Targets in a valid build order for one requested target."""

    requested: str
    targets: List[Target]

    def __iter__(self) -> Iterator[Target]:
        return iter(self.targets)

    def __len__(self) -> int:
        return len(self.targets)

    def names(self) -> List[str]:
        return [target.name for target in self.targets]

    def waves(self) -> List[List[Target]]:
        """Partition the plan into groups whose prerequisites lie in earlier groups."""

        depth: Dict[str, int] = {}
        waves: List[List[Target]] = []
        for target in self.targets:
            level = 1 + max((depth[dep] for dep in target.deps), default=-1)
            depth[target.name] = level
            if level == len(waves):
                waves.append([])
            waves[level].append(target)
        return waves

    def dependents(self, name: str) -> List[str]:
        """Names of plan targets depending on ``name`` directly or transitively."""

        affected = {name}
        result: List[str] = []
        for target in self.targets:
            if any(dep in affected for dep in target.deps):
                affected.add(target.name)
                result.append(target.name)
        return result


class TargetGraph:
    """Directed acyclic graph of targets keyed by name, in declaration order."""

    def __init__(self, targets: Iterable[Target] = ()) -> None:
        self._targets: Dict[str, Target] = {}
        for target in targets:
            self.add(target)

    def add(self, target: Target) -> None:
        if target.name in self._targets:
            raise DuplicateTargetError(target.name)
        self._targets[target.name] = target

    def __contains__(self, name: object) -> bool:
        return name in self._targets

    def __iter__(self) -> Iterator[Target]:
        return iter(self._targets.values())

    def __len__(self) -> int:
        return len(self._targets)

    def names(self) -> List[str]:
        return list(self._targets)

    def get(self, name: str) -> Target:
        try:
            return self._targets[name]
        except KeyError:
            raise UnknownTargetError(name, available=self.names()) from None

    def resolve(self, name: str) -> ExecutionPlan:
        root = self.get(name)
        visiting: List[str] = []
        visited: set[str] = set()
        order: List[Target] = []

        def visit(target: Target) -> None:
            if target.name in visiting:
                start = visiting.index(target.name)
                raise CyclicDependencyError([*visiting[start:], target.name])
            if target.name in visited:
                return
            visiting.append(target.name)
            for dep_name in target.deps:
                dependency = self._targets.get(dep_name)
                if dependency is None:
                    raise UnknownTargetError(dep_name, referenced_by=target.name)
                visit(dependency)
            visiting.pop()
            visited.add(target.name)
            order.append(target)

        visit(root)
        return ExecutionPlan(requested=name, targets=order)

    def check(self) -> None:
        """Resolve every registered target, raising the first graph error found."""

        for name in self._targets:
            self.resolve(name)
