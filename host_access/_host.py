# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from subprocess import CompletedProcess
from typing import NamedTuple
from typing import Optional
from typing import Sequence

import paramiko

from host_access._command import CommandFailed
from host_access._command import DEFAULT_TIMEOUT_SEC
from host_access._command import Shell
from host_access._local_shell import local_shell
from host_access._posix_shell import script_args
from host_access._ssh_shell import Ssh

_logger = logging.getLogger(__name__)

_ABSENT = 100


class Target(NamedTuple):
    """Where to connect; auth_reference is a handle, never a secret."""

    host: str
    user: str
    auth_reference: str = 'agent'
    port: int = 22

    def is_local(self):
        return self.host == 'local'

    def __str__(self):
        if self.is_local():
            return 'local'
        return f'{self.user}@{self.host}:{self.port}'


class FileStat(NamedTuple):

    mode: int
    owner: str
    group: str


class Host:
    """Commands and file operations on a target over a shell.

    Every operation is a command, so the same code serves a local shell
    and SSH. With sudo, commands are prefixed with non-interactive sudo.
    """

    def __init__(self, shell: Shell, name: str, sudo=False, timeout_sec: float = DEFAULT_TIMEOUT_SEC):
        self._shell = shell
        self.name = name
        self._sudo = sudo
        self._timeout_sec = timeout_sec

    def __repr__(self):
        return f'<Host {self.name}>'

    def _args(self, args: Sequence[str]):
        if self._sudo:
            return ['sudo', '-n', *args]
        return list(args)

    def run(
            self,
            args: Sequence[str],
            input: Optional[bytes] = None,  # noqa PyShadowingBuiltins
            check=True,
            timeout_sec: Optional[float] = None,
            ) -> CompletedProcess:
        return self._shell.run(
            self._args(args),
            input=input,
            check=check,
            timeout_sec=timeout_sec or self._timeout_sec,
            )

    def run_script(
            self,
            script: str,
            *params,
            input: Optional[bytes] = None,  # noqa PyShadowingBuiltins
            check=True,
            timeout_sec: Optional[float] = None,
            ) -> CompletedProcess:
        return self.run(script_args(script, *params), input=input, check=check, timeout_sec=timeout_sec)

    def exists(self, path: str) -> bool:
        result = self.run(['test', '-e', path], check=False)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise CommandFailed(result.returncode, result.args, result.stdout, result.stderr)

    def read_bytes(self, path: str) -> Optional[bytes]:
        """Return file contents or None if there is no such file."""
        result = self.run_script(
            '[ -e "$1" ] || exit {}\n'
            'exec cat -- "$1"'.format(_ABSENT),
            path,
            check=False,
            )
        if result.returncode == _ABSENT:
            return None
        if result.returncode != 0:
            raise CommandFailed(result.returncode, result.args, result.stdout, result.stderr)
        return result.stdout

    def stat(self, path: str) -> Optional[FileStat]:
        result = self.run_script(
            '[ -e "$1" ] || exit {}\n'
            'exec stat -c "%a %U %G" -- "$1"'.format(_ABSENT),
            path,
            check=False,
            )
        if result.returncode == _ABSENT:
            return None
        if result.returncode != 0:
            raise CommandFailed(result.returncode, result.args, result.stdout, result.stderr)
        [mode, owner, group] = result.stdout.decode().split()
        return FileStat(int(mode, 8), owner, group)

    def write_bytes_atomic(
            self,
            path: str,
            data: bytes,
            mode: Optional[int] = None,
            owner: Optional[str] = None,
            ):
        """Replace file contents via a temporary file in the same dir and rename.

        Mode and ownership of an existing file are kept unless given.
        Owner may be "user" or "user:group".
        """
        self.run_script(
            '''
            dest=$1
            tmp=$(mktemp "$dest.XXXXXX")
            trap 'rm -f "$tmp"' EXIT
            cat > "$tmp"
            if [ -e "$dest" ]; then
                chmod --reference="$dest" "$tmp"
                chown --reference="$dest" "$tmp"
            else
                chmod "$(printf '%o' $((0666 & ~0$(umask))))" "$tmp"
            fi
            if [ -n "$2" ]; then chmod "$2" "$tmp"; fi
            if [ -n "$3" ]; then chown "$3" "$tmp"; fi
            mv -f "$tmp" "$dest"
            ''',
            path,
            '' if mode is None else format(mode, 'o'),
            owner or '',
            input=data,
            )
        _logger.info("%s: %s: written %d bytes", self.name, path, len(data))

    def close(self):
        self._shell.close()


def open_host(
        target: Target,
        key: Optional[paramiko.PKey] = None,
        sudo=False,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        ) -> Host:
    """Make a Host; SSH connects lazily, on the first command."""
    if target.is_local():
        return Host(local_shell, str(target), sudo=sudo, timeout_sec=timeout_sec)
    ssh = Ssh(target.host, target.port, target.user, key=key)
    return Host(ssh, str(target), sudo=sudo, timeout_sec=timeout_sec)
