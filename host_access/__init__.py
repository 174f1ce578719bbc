# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Connection transport: run commands and handle files on a target host.

A target is reached either through the local shell or over SSH.
Everything above this package sees only Host, so reconcilers never know
which one is used.
"""
from host_access._command import CommandFailed
from host_access._command import Run
from host_access._command import Shell
from host_access._host import FileStat
from host_access._host import Host
from host_access._host import Target
from host_access._host import open_host
from host_access._local_shell import local_shell
from host_access._posix_shell import command_to_script
from host_access._posix_shell import quote_arg
from host_access._posix_shell import script_args
from host_access._ssh_shell import HostUnreachable
from host_access._ssh_shell import Ssh
from host_access._ssh_shell import load_private_key

__all__ = [
    'CommandFailed',
    'FileStat',
    'Host',
    'HostUnreachable',
    'Run',
    'Shell',
    'Ssh',
    'Target',
    'command_to_script',
    'load_private_key',
    'local_shell',
    'open_host',
    'quote_arg',
    'script_args',
    ]
