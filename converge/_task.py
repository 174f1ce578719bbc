# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import json
import logging
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any
from typing import FrozenSet
from typing import List
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Sequence

from converge._exceptions import TaskListError

_logger = logging.getLogger(__name__)


class ChangePolicy(Enum):
    APPLY = 'apply'
    CHECK = 'check'  # Probe and decide, never mutate.
    WHEN_CHANGED = 'when_changed'  # Only if a dependency reported Changed.


class Task(NamedTuple):
    """Named unit of desired state.

    depends_on is None when not declared: the task then follows its
    predecessor in the list. An explicit set, even empty, is taken as is.
    """

    name: str
    kind: str
    parameters: Mapping[str, Any]
    depends_on: Optional[FrozenSet[str]] = None
    change_policy: ChangePolicy = ChangePolicy.APPLY

    def __repr__(self):
        return f'<Task {self.name!r} {self.kind}>'


_FIELDS = {'name', 'kind', 'parameters', 'depends_on', 'change_policy'}


def _check_parameter_value(task_name, key, value):
    if isinstance(value, str):
        return
    if isinstance(value, Mapping):
        for nested_key, nested_value in value.items():
            _check_parameter_value(task_name, f'{key}.{nested_key}', nested_value)
        return
    raise TaskListError(
        f"Task {task_name!r}: parameter {key!r} must be a string or a mapping, "
        f"got {type(value).__name__}")


def parse_task(descriptor: Mapping[str, Any], required: Mapping[str, Sequence[str]]) -> Task:
    """Make Task from a descriptor; required maps kind to required parameters."""
    if not isinstance(descriptor, Mapping):
        raise TaskListError(f"Task descriptor must be a mapping, got {descriptor!r}")
    unknown = sorted(set(descriptor) - _FIELDS)
    if unknown:
        raise TaskListError(f"Task descriptor has unknown fields {unknown}: {descriptor!r}")
    name = descriptor.get('name')
    if not isinstance(name, str) or not name.strip():
        raise TaskListError(f"Task name must be a non-empty string: {descriptor!r}")
    kind = descriptor.get('kind')
    if not isinstance(kind, str) or kind not in required:
        raise TaskListError(f"Task {name!r}: unknown kind {kind!r}, known: {sorted(required)}")
    parameters = descriptor.get('parameters', {})
    if not isinstance(parameters, Mapping):
        raise TaskListError(f"Task {name!r}: parameters must be a mapping")
    for key, value in parameters.items():
        _check_parameter_value(name, key, value)
    missing = [key for key in required[kind] if key not in parameters]
    if missing:
        raise TaskListError(f"Task {name!r}: {kind} requires parameters {missing}")
    depends_on = descriptor.get('depends_on')
    if depends_on is not None:
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise TaskListError(f"Task {name!r}: depends_on must be a list of task names")
        depends_on = frozenset(depends_on)
    try:
        change_policy = ChangePolicy(descriptor.get('change_policy', ChangePolicy.APPLY.value))
    except ValueError:
        raise TaskListError(
            f"Task {name!r}: change_policy must be one of "
            f"{[p.value for p in ChangePolicy]}")
    return Task(name, kind, MappingProxyType(dict(parameters)), depends_on, change_policy)


def parse_tasks(descriptors: Sequence[Any], required: Mapping[str, Sequence[str]]) -> List[Task]:
    if isinstance(descriptors, (str, bytes)) or not isinstance(descriptors, Sequence):
        raise TaskListError("Task list must be a list of task descriptors")
    return [parse_task(d, required) for d in descriptors]


def load_tasks(path: Path, required: Mapping[str, Sequence[str]]) -> List[Task]:
    _logger.info("Load tasks from %s", path)
    try:
        descriptors = json.loads(Path(path).read_text(encoding='utf-8'))
    except json.JSONDecodeError as e:
        raise TaskListError(f"{path}: not a valid JSON: {e}")
    except OSError as e:
        raise TaskListError(f"{path}: cannot be read: {e.strerror}")
    tasks = parse_tasks(descriptors, required)
    _logger.info("Loaded %d tasks from %s", len(tasks), path)
    return tasks
