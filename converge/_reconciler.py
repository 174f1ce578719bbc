# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Contract of a reconciler: one per kind of resource.

The engine calls, in order: desired() to parse parameters and resolve
secrets, probe() to read the current state, reconcile() to decide,
and apply() only if the decision is Apply. reconcile() is pure.
Running the cycle twice in a row with nothing else changing the host
must give NoOp the second time, except where a reconciler says otherwise.
"""
from abc import ABCMeta
from abc import abstractmethod
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from subprocess import TimeoutExpired
from typing import Any
from typing import Callable
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Sequence

from converge._db_servers import DatabaseServer
from converge._db_servers import DatabaseServerError
from converge._db_servers import ServerSpec
from converge._exceptions import ReconcileError
from converge._facts import FactProbe
from converge._secrets import SecretResolver
from host_access import CommandFailed
from host_access import Host
from host_access import HostUnreachable


class Action(Enum):
    NO_OP = 'no-op'
    APPLY = 'apply'


class Decision(NamedTuple):

    action: Action
    detail: str


def no_op(detail: str) -> Decision:
    return Decision(Action.NO_OP, detail)


def must_apply(detail: str) -> Decision:
    return Decision(Action.APPLY, detail)


class Context(NamedTuple):
    """What reconcilers may use during a run."""

    host: Host
    probe: FactProbe
    secrets: SecretResolver
    database_servers: Callable[[ServerSpec], DatabaseServer]
    template_vars: Mapping[str, Any]
    template_dir: Path
    install_timeout_sec: float


class Reconciler(metaclass=ABCMeta):

    kind: str
    required: Sequence[str] = ()

    def __repr__(self):
        return f'<{self.__class__.__name__}>'

    @abstractmethod
    def desired(self, parameters: Mapping[str, Any], context: Context):
        pass

    @abstractmethod
    def resource(self, parameters: Mapping[str, Any]) -> str:
        """Name what the task changes, to find tasks competing for it."""
        pass

    @abstractmethod
    def probe(self, context: Context, desired):
        pass

    @abstractmethod
    def reconcile(self, desired, probed) -> Decision:
        pass

    @abstractmethod
    def apply(self, context: Context, desired, probed) -> Optional[str]:
        """Make the change; may return a note for the outcome detail."""
        pass


def flag(parameters: Mapping[str, Any], name: str, default: bool) -> bool:
    value = parameters.get(name)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ReconcileError(f"Parameter {name!r} must be a string")
    if value.lower() in ('yes', 'true', '1', 'on'):
        return True
    if value.lower() in ('no', 'false', '0', 'off'):
        return False
    raise ReconcileError(f"Parameter {name!r} must be true or false, got {value!r}")


def string(parameters: Mapping[str, Any], name: str, default: Optional[str] = None) -> Optional[str]:
    value = parameters.get(name, default)
    if value is not None and not isinstance(value, str):
        raise ReconcileError(f"Parameter {name!r} must be a string")
    return value


def choice(parameters: Mapping[str, Any], name: str, choices: Sequence[str], default: str) -> str:
    value = string(parameters, name, default)
    if value not in choices:
        raise ReconcileError(f"Parameter {name!r} must be one of {list(choices)}, got {value!r}")
    return value


def file_mode(parameters: Mapping[str, Any], name: str = 'mode') -> Optional[int]:
    """Octal mode like "0640" or "640"."""
    value = string(parameters, name)
    if value is None:
        return None
    try:
        mode = int(value, 8)
    except ValueError:
        raise ReconcileError(f"Parameter {name!r} must be an octal mode, got {value!r}")
    if not 0 <= mode <= 0o7777:
        raise ReconcileError(f"Parameter {name!r} is out of range: {value!r}")
    return mode


@contextmanager
def applying(what: str):
    try:
        yield
    except HostUnreachable as e:
        raise ReconcileError(f"{what}: host unreachable: {e}")
    except CommandFailed as e:
        raise ReconcileError(f"{what}: {e}")
    except TimeoutExpired as e:
        raise ReconcileError(f"{what}: timed out after {e.timeout} sec")
    except DatabaseServerError as e:
        raise ReconcileError(f"{what}: {e}")
    except OSError as e:
        raise ReconcileError(f"{what}: {e}")
