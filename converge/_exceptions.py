# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
from typing import Sequence


class ConvergeError(Exception):
    pass


class TaskListError(ConvergeError):
    pass


class GraphError(ConvergeError):
    """Plan cannot be built; nothing has been run."""


class DuplicateTaskName(GraphError):

    def __init__(self, name: str):
        super().__init__(f"Task name is not unique: {name!r}")
        self.name = name


class UnknownDependency(GraphError):

    def __init__(self, task_name: str, missing: str):
        super().__init__(f"Task {task_name!r} depends on unknown task {missing!r}")
        self.task_name = task_name
        self.missing = missing


class CyclicDependency(GraphError):

    def __init__(self, involved_tasks: Sequence[str]):
        cycle = ' -> '.join([*involved_tasks, involved_tasks[0]])
        super().__init__(f"Cyclic dependency between tasks: {cycle}")
        self.involved_tasks = tuple(involved_tasks)


class ProbeError(ConvergeError):
    """Current state cannot be read: host unreachable, access denied, etc."""


class ReconcileError(ConvergeError):
    """Mutation failed or desired state cannot be achieved."""


class TemplateError(ConvergeError):

    def __init__(self, template: str, missing_key: str):
        super().__init__(f"Template {template}: variable {missing_key!r} is not defined")
        self.missing_key = missing_key


class SecretResolutionError(ConvergeError):
    """Secret reference cannot be resolved.

    The message must name what needed the secret, never the reference itself.
    """
