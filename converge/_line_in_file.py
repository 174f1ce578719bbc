# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import re
from typing import NamedTuple
from typing import Optional
from typing import Pattern
from typing import Tuple

from converge._exceptions import ReconcileError
from converge._facts import FileFacts
from converge._reconciler import Reconciler
from converge._reconciler import applying
from converge._reconciler import flag
from converge._reconciler import must_apply
from converge._reconciler import no_op
from converge._reconciler import string

_logger = logging.getLogger(__name__)


class LineInFile(NamedTuple):
    path: str
    pattern: Pattern
    line: str
    create: bool


def patch_lines(text: str, pattern: Pattern, line: str) -> Tuple[Optional[str], str]:
    r"""Return patched text, or None if nothing to do, and what is done.

    The first line that matches the pattern or is equal to the desired line
    is the one that is kept in the desired state. Others are not touched.

    >>> patch_lines('a=1\r\nb=2\r\n', re.compile('^b='), 'b=3')
    ('a=1\r\nb=3\r\n', 'replace line 2')
    >>> patch_lines('a=1\nb=3', re.compile('^b='), 'b=3')
    (None, 'line 2 is as desired')
    >>> patch_lines('a=1', re.compile('^b='), 'b=3')
    ('a=1\nb=3\n', 'append line 2')
    """
    lines = text.split('\n')
    terminated = lines[-1] == ''
    if terminated:
        # Not a line: what follows the last newline.
        lines.pop()
    for index, raw in enumerate(lines):
        body = raw[:-1] if raw.endswith('\r') else raw
        if body == line:
            return None, f"line {index + 1} is as desired"
        if pattern.search(body):
            lines[index] = line + raw[len(body):]
            return '\n'.join(lines) + ('\n' if terminated else ''), f"replace line {index + 1}"
    lines.append(line)
    return '\n'.join(lines) + '\n', f"append line {len(lines)}"


def _decode(content: bytes) -> str:
    return content.decode('utf-8', errors='surrogateescape')


def _encode(text: str) -> bytes:
    return text.encode('utf-8', errors='surrogateescape')


class LineInFileReconciler(Reconciler):
    """Make sure one line of a config file is as desired."""

    kind = 'line_in_file'
    required = ('path', 'match', 'line')

    def desired(self, parameters, context):
        line = string(parameters, 'line')
        if '\n' in line or '\r' in line:
            raise ReconcileError("Parameter 'line' must be a single line")
        try:
            pattern = re.compile(string(parameters, 'match'))
        except re.error as e:
            raise ReconcileError(f"Parameter 'match' is not a valid regular expression: {e}")
        return LineInFile(string(parameters, 'path'), pattern, line, flag(parameters, 'create', False))

    def resource(self, parameters):
        return f"file:{parameters['path']}"

    def probe(self, context, desired: LineInFile):
        return context.probe.file(desired.path)

    def reconcile(self, desired: LineInFile, probed: FileFacts):
        if probed.content is None:
            if not desired.create:
                raise ReconcileError(f"{desired.path} does not exist")
            return must_apply(f"create {desired.path}")
        patched, what = patch_lines(_decode(probed.content), desired.pattern, desired.line)
        if patched is None:
            return no_op(f"{desired.path}: {what}")
        return must_apply(f"{desired.path}: {what}")

    def apply(self, context, desired: LineInFile, probed: FileFacts):
        if probed.content is None:
            data = _encode(desired.line + '\n')
        else:
            patched, _ = patch_lines(_decode(probed.content), desired.pattern, desired.line)
            data = _encode(patched)
        with applying(f"line in {desired.path}"):
            context.host.write_bytes_atomic(desired.path, data)
