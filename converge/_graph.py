# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Turn a declared task list into layers of tasks that may run together.

A task without declared dependencies follows its predecessor in the list,
so a plain list runs strictly in order. Declaring depends_on, even empty,
takes the task out of this chain and lets it share a layer with others.
"""
import logging
from types import MappingProxyType
from typing import Callable
from typing import Dict
from typing import FrozenSet
from typing import List
from typing import Mapping
from typing import NamedTuple
from typing import Sequence
from typing import Tuple

from converge._exceptions import CyclicDependency
from converge._exceptions import DuplicateTaskName
from converge._exceptions import UnknownDependency
from converge._task import Task

_logger = logging.getLogger(__name__)


class ExecutionPlan(NamedTuple):

    tasks: Tuple[Task, ...]  # Declaration order.
    layers: Tuple[Tuple[Task, ...], ...]
    dependencies: Mapping[str, FrozenSet[str]]  # With implicit edges.

    def position(self, name: str) -> int:
        for i, task in enumerate(self.tasks):
            if task.name == name:
                return i
        raise KeyError(name)

    def describe(self) -> str:
        return ' | '.join(', '.join(t.name for t in layer) for layer in self.layers)


def build(tasks: Sequence[Task]) -> ExecutionPlan:
    position: Dict[str, int] = {}
    for i, task in enumerate(tasks):
        if task.name in position:
            raise DuplicateTaskName(task.name)
        position[task.name] = i
    dependencies: Dict[str, FrozenSet[str]] = {}
    for i, task in enumerate(tasks):
        if task.depends_on is None:
            dependencies[task.name] = frozenset() if i == 0 else frozenset([tasks[i - 1].name])
            continue
        for name in sorted(task.depends_on):
            if name not in position:
                raise UnknownDependency(task.name, name)
        dependencies[task.name] = task.depends_on
    ordered = _topological_order(tasks, dependencies, position)
    layer_of: Dict[str, int] = {}
    for name in ordered:
        layer_of[name] = max((layer_of[d] + 1 for d in dependencies[name]), default=0)
    layers: List[List[Task]] = [[] for _ in range(max(layer_of.values(), default=-1) + 1)]
    for task in tasks:
        layers[layer_of[task.name]].append(task)
    plan = ExecutionPlan(
        tuple(tasks),
        tuple(tuple(layer) for layer in layers),
        MappingProxyType(dependencies),
        )
    _logger.debug("Plan: %s", plan.describe())
    return plan


_UNVISITED, _IN_PROGRESS, _DONE = range(3)


def _topological_order(tasks, dependencies, position) -> List[str]:
    """Depth-first, dependencies before dependents; raise on a back-edge.

    Iterative: a long plain list is a chain as deep as the list.
    """
    state = {task.name: _UNVISITED for task in tasks}
    order = []
    for root in tasks:
        if state[root.name] != _UNVISITED:
            continue
        state[root.name] = _IN_PROGRESS
        path = [root.name]
        pending = [iter(sorted(dependencies[root.name], key=position.__getitem__))]
        while pending:
            dependency = next(pending[-1], None)
            if dependency is None:
                pending.pop()
                done = path.pop()
                state[done] = _DONE
                order.append(done)
            elif state[dependency] == _IN_PROGRESS:
                raise CyclicDependency(path[path.index(dependency):])
            elif state[dependency] == _UNVISITED:
                state[dependency] = _IN_PROGRESS
                path.append(dependency)
                pending.append(iter(sorted(dependencies[dependency], key=position.__getitem__)))
    return order


class Conflict(NamedTuple):

    resource: str
    first: str
    second: str


def find_conflicts(plan: ExecutionPlan, resource_of: Callable[[Task], str]) -> List[Conflict]:
    """Find tasks in one layer that change the same resource.

    Such tasks may run concurrently. Ordering them is up to whoever
    declares dependencies; the engine does not prevent it.
    """
    conflicts = []
    for layer in plan.layers:
        seen: Dict[str, str] = {}
        for task in layer:
            resource = resource_of(task)
            if resource in seen:
                conflicts.append(Conflict(resource, seen[resource], task.name))
            else:
                seen[resource] = task.name
    return conflicts
