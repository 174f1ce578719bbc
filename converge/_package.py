# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from typing import NamedTuple

from converge._facts import PackageFacts
from converge._reconciler import Reconciler
from converge._reconciler import applying
from converge._reconciler import choice
from converge._reconciler import flag
from converge._reconciler import must_apply
from converge._reconciler import no_op
from converge._reconciler import string

_logger = logging.getLogger(__name__)


class PackageState(NamedTuple):
    name: str
    present: bool
    manager: str


_commands = {
    ('apt', True): ['env', 'DEBIAN_FRONTEND=noninteractive', 'apt-get', 'install', '-y'],
    ('apt', False): ['env', 'DEBIAN_FRONTEND=noninteractive', 'apt-get', 'remove', '-y'],
    ('dnf', True): ['dnf', 'install', '-y'],
    ('dnf', False): ['dnf', 'remove', '-y'],
    }


class PackageReconciler(Reconciler):
    kind = 'package'
    required = ('name',)

    def desired(self, parameters, context):
        return PackageState(
            string(parameters, 'name'),
            flag(parameters, 'present', True),
            choice(parameters, 'manager', ['apt', 'dnf'], 'apt'),
            )

    def resource(self, parameters):
        return f"package:{parameters['name']}"

    def probe(self, context, desired: PackageState):
        return context.probe.package(desired.name, desired.manager)

    def reconcile(self, desired: PackageState, probed: PackageFacts):
        installed = probed.installed_version is not None
        if desired.present and installed:
            return no_op(f"{desired.name} {probed.installed_version} is installed")
        if not desired.present and not installed:
            return no_op(f"{desired.name} is not installed")
        if desired.present:
            return must_apply(f"install {desired.name}")
        return must_apply(f"remove {desired.name} {probed.installed_version}")

    def apply(self, context, desired: PackageState, probed: PackageFacts):
        command = [*_commands[desired.manager, desired.present], desired.name]
        with applying(f"package {desired.name}"):
            context.host.run(command, input=b'', timeout_sec=context.install_timeout_sec)
        _logger.info("%s: package %s: %s", context.host.name, desired.name, 'installed' if desired.present else 'removed')
