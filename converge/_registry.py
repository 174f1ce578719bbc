# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
from typing import Mapping
from typing import Sequence

from converge._command_if_absent import CommandIfAbsentReconciler
from converge._database import DbCreateReconciler
from converge._database import DbUserGrantReconciler
from converge._line_in_file import LineInFileReconciler
from converge._package import PackageReconciler
from converge._reconciler import Reconciler
from converge._service import ServiceReconciler
from converge._template import TemplateReconciler


def default_registry() -> Mapping[str, Reconciler]:
    reconcilers = [
        PackageReconciler(),
        ServiceReconciler(),
        TemplateReconciler(),
        LineInFileReconciler(),
        DbCreateReconciler(),
        DbUserGrantReconciler(),
        CommandIfAbsentReconciler(),
        ]
    return {reconciler.kind: reconciler for reconciler in reconcilers}


def required_parameters(registry: Mapping[str, Reconciler]) -> Mapping[str, Sequence[str]]:
    return {kind: reconciler.required for kind, reconciler in registry.items()}
