# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import os
import shlex
from textwrap import dedent
from typing import List
from typing import Sequence


def quote_arg(arg):
    return shlex.quote(str(arg))


def command_to_script(command: Sequence) -> str:
    """Join arguments into a line a POSIX shell would split back.

    >>> command_to_script(['cat', '--', '/etc/my app.conf'])
    "cat -- '/etc/my app.conf'"
    >>> command_to_script(['chmod', 0o644, 'a'])
    Traceback (most recent call last):
    ...
    TypeError: Unsupported arg 420 in ['chmod', 420, 'a']
    """
    str_args = []
    for arg in command:
        if isinstance(arg, str):
            str_args.append(arg)
        elif isinstance(arg, os.PathLike):
            str_args.append(os.fspath(arg))
        else:
            raise TypeError(f"Unsupported arg {arg!r} in {command!r}")
    return shlex.join(str_args)


def script_args(script: str, *params) -> List[str]:
    """Run a script in sh with positional parameters.

    Parameters are passed as $1, $2, ..., never interpolated into the script,
    so paths with spaces or quotes need no care in the script.

    >>> script_args('cat -- "$1"', '/tmp/a b')
    ['sh', '-c', 'set -eu\\ncat -- "$1"', 'sh', '/tmp/a b']
    """
    script = 'set -eu\n' + dedent(script).strip()
    return ['sh', '-c', script, 'sh', *[os.fspath(p) for p in params]]
