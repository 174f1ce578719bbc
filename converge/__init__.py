# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Declarative, idempotent provisioning of a host.

A task list says what must be true on the host: a package installed, a
service running, a line in a config file, a database user granted. Each
task is probed, compared with the desired state and changed only if
needed, so the same list can be run again and again.

>>> from converge import Engine, build, default_registry, load_tasks, required_parameters
>>> from host_access import Target, open_host
>>> registry = default_registry()
>>> plan = build(load_tasks('site.json', required_parameters(registry)))  # doctest: +SKIP
>>> report = Engine(open_host(Target('local', 'root')), registry).run(plan)  # doctest: +SKIP
"""
from converge._config import RunSettings
from converge._config import load_settings
from converge._config import read_config
from converge._engine import Engine
from converge._exceptions import ConvergeError
from converge._exceptions import CyclicDependency
from converge._exceptions import DuplicateTaskName
from converge._exceptions import GraphError
from converge._exceptions import ProbeError
from converge._exceptions import ReconcileError
from converge._exceptions import SecretResolutionError
from converge._exceptions import TaskListError
from converge._exceptions import TemplateError
from converge._exceptions import UnknownDependency
from converge._graph import ExecutionPlan
from converge._graph import build
from converge._graph import find_conflicts
from converge._reconciler import Reconciler
from converge._registry import default_registry
from converge._registry import required_parameters
from converge._report import Result
from converge._report import RunReport
from converge._report import RunStatus
from converge._report import TaskOutcome
from converge._secrets import Redactor
from converge._task import ChangePolicy
from converge._task import Task
from converge._task import load_tasks
from converge._task import parse_tasks

__all__ = [
    'ChangePolicy',
    'ConvergeError',
    'CyclicDependency',
    'DuplicateTaskName',
    'Engine',
    'ExecutionPlan',
    'GraphError',
    'ProbeError',
    'ReconcileError',
    'Reconciler',
    'Redactor',
    'Result',
    'RunReport',
    'RunSettings',
    'RunStatus',
    'SecretResolutionError',
    'Task',
    'TaskListError',
    'TaskOutcome',
    'TemplateError',
    'UnknownDependency',
    'build',
    'default_registry',
    'find_conflicts',
    'load_settings',
    'load_tasks',
    'parse_tasks',
    'read_config',
    'required_parameters',
    ]

