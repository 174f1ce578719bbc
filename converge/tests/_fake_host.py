# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import threading
from subprocess import CompletedProcess
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from host_access import CommandFailed
from host_access import Host
from host_access import Shell


class FakeSystem:
    """Packages and systemd units of a host that does not exist."""

    def __init__(self):
        self.packages: Dict[str, str] = {}  # Name to version.
        self.removed_packages = set()  # Removed, config files left.
        self.units: Dict[str, Dict[str, bool]] = {}
        self.available_packages = {'nginx': '1.24.0-2', 'mariadb-server': '1:10.11.6-0'}


class FakeShell(Shell):
    """Answer commands the way dpkg, apt-get and systemctl would."""

    def __init__(self, system: FakeSystem, mysql: Optional[Callable[[bytes], bytes]] = None):
        self._system = system
        self._mysql = mysql
        self._lock = threading.Lock()
        self.commands: List[List[str]] = []
        self.inputs: List[Optional[bytes]] = []
        self.probe_failure: Optional[bytes] = None

    def __repr__(self):
        return '<FakeShell>'

    def Popen(self, args):
        raise NotImplementedError("Fake shell only runs commands to completion")

    def run(self, args, input=None, timeout_sec=60, check=True):  # noqa PyShadowingBuiltins
        args = list(args)
        with self._lock:
            self.commands.append(args)
            self.inputs.append(input)
            returncode, stdout, stderr = self._dispatch(args, input)
        if check and returncode != 0:
            raise CommandFailed(returncode, args, stdout, stderr)
        return CompletedProcess(args, returncode, stdout, stderr)

    def _dispatch(self, args, input):  # noqa PyShadowingBuiltins
        if args[:2] == ['sudo', '-n']:
            args = args[2:]
        if args[0] == 'dpkg-query':
            if self.probe_failure is not None:
                return 2, b'', self.probe_failure
            name = args[-1]
            if name in self._system.packages:
                return 0, f'install ok installed\t{self._system.packages[name]}'.encode(), b''
            if name in self._system.removed_packages:
                return 0, b'deinstall ok config-files\t1.0', b''
            return 1, b'', f'dpkg-query: no packages found matching {name}\n'.encode()
        if args[:3] == ['env', 'DEBIAN_FRONTEND=noninteractive', 'apt-get']:
            verb, name = args[3], args[-1]
            if verb == 'install':
                if name not in self._system.available_packages:
                    return 100, b'', f'E: Unable to locate package {name}\n'.encode()
                self._system.packages[name] = self._system.available_packages[name]
                self._system.removed_packages.discard(name)
                return 0, b'', b''
            if verb == 'remove':
                self._system.packages.pop(name, None)
                self._system.removed_packages.add(name)
                return 0, b'', b''
        if args[0] == 'systemctl':
            return self._systemctl(args[1], args[2])
        if args[0] == 'sh' and 'exec mysql' in args[2]:
            if self._mysql is None:
                return 127, b'', b'sh: 1: exec: mysql: not found\n'
            return 0, self._mysql(input), b''
        return 127, b'', f'{args[0]}: command not found\n'.encode()

    def _systemctl(self, verb, name):
        unit = self._system.units.get(name)
        if verb == 'is-active':
            if unit is not None and unit['active']:
                return 0, b'active\n', b''
            return 3, b'inactive\n', b''
        if unit is None:
            message = f'Failed to {verb} unit {name}.service: No such file or directory\n'
            if verb == 'is-enabled':
                message = f'Failed to get unit file state for {name}.service: No such file or directory\n'
            return 1, b'', message.encode()
        if verb == 'is-enabled':
            if unit['enabled']:
                return 0, b'enabled\n', b''
            return 1, b'disabled\n', b''
        if verb in ('start', 'restart'):
            unit['active'] = True
        elif verb == 'stop':
            unit['active'] = False
        elif verb == 'enable':
            unit['enabled'] = True
        elif verb == 'disable':
            unit['enabled'] = False
        else:
            return 1, b'', f'Unknown command verb {verb}.\n'.encode()
        return 0, b'', b''

    def executed(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.commands if c[:len(prefix)] == list(prefix)]

    def close(self):
        pass


def make_fake_host(system: FakeSystem, mysql=None):
    shell = FakeShell(system, mysql)
    return Host(shell, 'fake-host'), shell
