# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Read-only queries of the current state of a host.

Absence of a resource is a fact, not an error. ProbeError means the state
could not be read at all: the host is unreachable, access is denied,
a command failed in an unexpected way or timed out.
"""
import logging
from contextlib import contextmanager
from subprocess import TimeoutExpired
from typing import Callable
from typing import NamedTuple
from typing import Optional

from converge._db_servers import DatabaseServer
from converge._db_servers import DatabaseServerError
from converge._db_servers import ServerSpec
from converge._exceptions import ProbeError
from host_access import CommandFailed
from host_access import FileStat
from host_access import Host
from host_access import HostUnreachable

_logger = logging.getLogger(__name__)


class PackageFacts(NamedTuple):
    installed_version: Optional[str]


class ServiceFacts(NamedTuple):
    active: bool
    enabled: Optional[bool]  # None if the unit is not known to systemd.


class FileFacts(NamedTuple):
    content: Optional[bytes]  # None if absent.
    stat: Optional[FileStat]


class MarkerFacts(NamedTuple):
    exists: bool


class DatabaseFacts(NamedTuple):
    exists: bool


class GrantFacts(NamedTuple):
    user_exists: bool
    grant_exists: bool


_ENABLED_STATES = {'enabled', 'enabled-runtime', 'static', 'alias', 'indirect'}
_DISABLED_STATES = {'disabled', 'masked', 'masked-runtime'}


@contextmanager
def _probing(what: str):
    try:
        yield
    except HostUnreachable as e:
        raise ProbeError(f"{what}: host unreachable: {e}")
    except CommandFailed as e:
        raise ProbeError(f"{what}: {e}")
    except TimeoutExpired as e:
        raise ProbeError(f"{what}: timed out after {e.timeout} sec")
    except DatabaseServerError as e:
        raise ProbeError(f"{what}: {e}")
    except OSError as e:  # Socket errors from an established connection.
        raise ProbeError(f"{what}: {e}")


class FactProbe:

    def __init__(self, host: Host, database_servers: Callable[[ServerSpec], DatabaseServer]):
        self._host = host
        self._database_servers = database_servers

    def package(self, name: str, manager: str) -> PackageFacts:
        with _probing(f"package {name}"):
            if manager == 'apt':
                result = self._host.run(
                    ['dpkg-query', '--show', '--showformat', '${Status}\t${Version}', name],
                    check=False)
                # Unknown package: exit status 1, message on stderr.
                if result.returncode == 1:
                    return PackageFacts(None)
                if result.returncode != 0:
                    raise CommandFailed(result.returncode, result.args, result.stdout, result.stderr)
                status, _, version = result.stdout.decode().partition('\t')
                # Removed but not purged packages are "deinstall ok config-files".
                if status.split()[-1:] != ['installed']:
                    return PackageFacts(None)
                return PackageFacts(version.strip())
            if manager == 'dnf':
                result = self._host.run(
                    ['rpm', '--query', '--queryformat', '%{VERSION}-%{RELEASE}', name],
                    check=False)
                if result.returncode == 1:
                    return PackageFacts(None)
                if result.returncode != 0:
                    raise CommandFailed(result.returncode, result.args, result.stdout, result.stderr)
                return PackageFacts(result.stdout.decode().strip())
            raise ValueError(f"Unknown package manager {manager!r}")

    def service(self, name: str) -> ServiceFacts:
        with _probing(f"service {name}"):
            # Exit status 0 iff active, stdout is the state in any case.
            active = self._host.run(['systemctl', 'is-active', name], check=False)
            enabled = self._host.run(['systemctl', 'is-enabled', name], check=False)
            enabled_state = enabled.stdout.decode().strip()
            if enabled_state in _ENABLED_STATES:
                return ServiceFacts(active.returncode == 0, True)
            if enabled_state in _DISABLED_STATES:
                return ServiceFacts(active.returncode == 0, False)
            # Unknown unit: "Failed to get unit file state ...: No such file or directory".
            if enabled.returncode != 0 and b'No such file' not in enabled.stderr:
                raise CommandFailed(enabled.returncode, enabled.args, enabled.stdout, enabled.stderr)
            return ServiceFacts(active.returncode == 0, None)

    def file(self, path: str) -> FileFacts:
        with _probing(f"file {path}"):
            content = self._host.read_bytes(path)
            if content is None:
                return FileFacts(None, None)
            return FileFacts(content, self._host.stat(path))

    def marker(self, path: str) -> MarkerFacts:
        with _probing(f"marker {path}"):
            return MarkerFacts(self._host.exists(path))

    def database(self, server: ServerSpec, name: str) -> DatabaseFacts:
        with _probing(f"database {name}"):
            return DatabaseFacts(self._database_servers(server).database_exists(name))

    def grant(self, server: ServerSpec, user: str, host_pattern: str, database: str) -> GrantFacts:
        with _probing(f"user {user}@{host_pattern}"):
            db_server = self._database_servers(server)
            if not db_server.user_exists(user, host_pattern):
                return GrantFacts(False, False)
            return GrantFacts(True, db_server.grant_exists(user, host_pattern, database))
