# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from typing import List
from typing import NamedTuple
from typing import Optional

from converge._facts import ServiceFacts
from converge._reconciler import Reconciler
from converge._reconciler import applying
from converge._reconciler import choice
from converge._reconciler import flag
from converge._reconciler import must_apply
from converge._reconciler import no_op
from converge._reconciler import string

_logger = logging.getLogger(__name__)


class ServiceState(NamedTuple):
    name: str
    state: str  # started, stopped or restarted
    enabled: Optional[bool]  # None: leave as is.


def _steps(desired: ServiceState, probed: ServiceFacts) -> List[str]:
    """Return systemctl verbs to run, in order."""
    steps = []
    if desired.enabled is not None and probed.enabled != desired.enabled:
        steps.append('enable' if desired.enabled else 'disable')
    if desired.state == 'restarted':
        steps.append('restart')
    elif desired.state == 'started' and not probed.active:
        steps.append('start')
    elif desired.state == 'stopped' and probed.active:
        steps.append('stop')
    return steps


class ServiceReconciler(Reconciler):
    """Bring a systemd unit to the desired run state.

    State "restarted" always restarts, whatever the probed state is.
    It is the one case where a second run with no other changes still
    reports Changed.
    """

    kind = 'service'
    required = ('name',)

    def desired(self, parameters, context):
        enabled = flag(parameters, 'enabled', True) if 'enabled' in parameters else None
        return ServiceState(
            string(parameters, 'name'),
            choice(parameters, 'state', ['started', 'stopped', 'restarted'], 'started'),
            enabled,
            )

    def resource(self, parameters):
        return f"service:{parameters['name']}"

    def probe(self, context, desired: ServiceState):
        return context.probe.service(desired.name)

    def reconcile(self, desired: ServiceState, probed: ServiceFacts):
        steps = _steps(desired, probed)
        if not steps:
            return no_op(f"{desired.name} is {'active' if probed.active else 'inactive'}")
        return must_apply(f"{desired.name}: {', '.join(steps)}")

    def apply(self, context, desired: ServiceState, probed: ServiceFacts):
        for verb in _steps(desired, probed):
            with applying(f"service {desired.name}: {verb}"):
                context.host.run(['systemctl', verb, desired.name])
            _logger.info("%s: service %s: %s", context.host.name, desired.name, verb)
