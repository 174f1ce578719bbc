# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from typing import NamedTuple
from typing import Optional

from converge._facts import MarkerFacts
from converge._reconciler import Reconciler
from converge._reconciler import applying
from converge._reconciler import must_apply
from converge._reconciler import no_op
from converge._reconciler import string
from host_access import quote_arg

_logger = logging.getLogger(__name__)


class Command(NamedTuple):
    command: str
    creates: str
    chdir: Optional[str]


class CommandIfAbsentReconciler(Reconciler):
    """Run a shell command unless the file it creates exists.

    Only the marker is checked: the command must be safe to run again
    if it fails halfway or does not create the marker.
    """

    kind = 'command_if_absent'
    required = ('command', 'creates')

    def desired(self, parameters, context):
        return Command(
            string(parameters, 'command'),
            string(parameters, 'creates'),
            string(parameters, 'chdir'),
            )

    def resource(self, parameters):
        return f"marker:{parameters['creates']}"

    def probe(self, context, desired: Command):
        return context.probe.marker(desired.creates)

    def reconcile(self, desired: Command, probed: MarkerFacts):
        if probed.exists:
            return no_op(f"{desired.creates} exists")
        return must_apply(f"run command to create {desired.creates}")

    def apply(self, context, desired: Command, probed: MarkerFacts):
        if desired.chdir is None:
            script = desired.command
        else:
            script = f'cd {quote_arg(desired.chdir)} || exit 1\n{desired.command}'
        with applying(f"command for {desired.creates}"):
            context.host.run(['sh', '-c', script], input=b'', timeout_sec=context.install_timeout_sec)
            if not context.host.exists(desired.creates):
                _logger.warning(
                    "%s: command succeeded but %s is still absent", context.host.name, desired.creates)
                return f"{desired.creates} is still absent, the command will run again"
        return None
