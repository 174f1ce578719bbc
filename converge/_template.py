# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import re
from pathlib import Path
from typing import Any
from typing import Dict
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Set

import jinja2
from jinja2 import meta

from converge._exceptions import ReconcileError
from converge._exceptions import TemplateError
from converge._facts import FileFacts
from converge._reconciler import Reconciler
from converge._reconciler import applying
from converge._reconciler import file_mode
from converge._reconciler import must_apply
from converge._reconciler import no_op
from converge._reconciler import string

_logger = logging.getLogger(__name__)

_undefined_re = re.compile(r"'(?P<key>[^']+)' is undefined")


class TemplateFile(NamedTuple):
    src: Path
    dest: str
    content: bytes
    mode: Optional[int]
    owner: Optional[str]

    def __repr__(self):
        # Rendered content may contain secrets.
        return f'<TemplateFile {self.src} -> {self.dest}, {len(self.content)} bytes>'


def _environment(src: Path) -> jinja2.Environment:
    return jinja2.Environment(
        loader=jinja2.FileSystemLoader(str(src.parent)),
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
        )


def _parse(env: jinja2.Environment, src: Path, name: str):
    try:
        source, _, _ = env.loader.get_source(env, name)
        return env.parse(source)
    except jinja2.TemplateNotFound:
        raise ReconcileError(f"Template {src.parent / name} not found")
    except jinja2.TemplateSyntaxError as e:
        raise ReconcileError(f"Template {src.parent / name}, line {e.lineno}: {e.message}")


def referenced_variables(src: Path) -> Optional[Set[str]]:
    """Variables used by the template and by templates it includes.

    None if a template name is only known at render time.
    """
    env = _environment(src)
    names = set()
    seen = set()
    pending = [src.name]
    while pending:
        name = pending.pop()
        if name in seen:
            continue
        seen.add(name)
        ast = _parse(env, src, name)
        names |= meta.find_undeclared_variables(ast)
        for included in meta.find_referenced_templates(ast):
            if included is None:
                return None
            pending.append(included)
    return names


def render(src: Path, variables: Mapping[str, Any]) -> str:
    """Render with every referenced variable required to be defined.

    Undeclared variables are looked up before rendering, so the first
    missing one is reported even if it is used only in a branch
    that is not taken.
    """
    env = _environment(src)
    ast = _parse(env, src, src.name)
    undeclared = meta.find_undeclared_variables(ast) - set(variables) - set(env.globals)
    if undeclared:
        raise TemplateError(str(src), sorted(undeclared)[0])
    try:
        return env.get_template(src.name).render(variables)
    except jinja2.UndefinedError as e:
        # Attributes of defined variables and variables of included templates.
        match = _undefined_re.search(str(e))
        raise TemplateError(str(src), match.group('key') if match else str(e))
    except jinja2.TemplateError as e:
        raise ReconcileError(f"Template {src}: {e}")


class TemplateReconciler(Reconciler):
    """Render a template on this machine and put the result to the target.

    Variables are the run's template variables overridden by the task's
    "vars". A variable may be {"secret_ref": "<reference>"}, resolved
    right before rendering if the template uses it.
    """

    kind = 'template'
    required = ('src', 'dest')

    def desired(self, parameters, context):
        src = Path(string(parameters, 'src')).expanduser()
        if not src.is_absolute():
            src = context.template_dir / src
        task_vars = parameters.get('vars', {})
        if not isinstance(task_vars, Mapping):
            raise ReconcileError("Parameter 'vars' must be a mapping")
        referenced = referenced_variables(src)
        variables: Dict[str, Any] = {}
        for name, value in {**context.template_vars, **task_vars}.items():
            if isinstance(value, Mapping) and 'secret_ref' in value:
                if referenced is not None and name not in referenced:
                    continue
                value = context.secrets.resolve(value['secret_ref'], f"template variable {name!r}")
            variables[name] = value
        content = render(src, variables)
        return TemplateFile(
            src,
            string(parameters, 'dest'),
            content.encode('utf-8'),
            file_mode(parameters),
            string(parameters, 'owner'),
            )

    def resource(self, parameters):
        return f"file:{parameters['dest']}"

    def probe(self, context, desired: TemplateFile):
        return context.probe.file(desired.dest)

    def reconcile(self, desired: TemplateFile, probed: FileFacts):
        if probed.content is None:
            return must_apply(f"create {desired.dest}")
        differences = []
        if probed.content != desired.content:
            differences.append('content')
        if desired.mode is not None and probed.stat.mode != desired.mode:
            differences.append(f'mode {probed.stat.mode:o} -> {desired.mode:o}')
        if desired.owner is not None:
            user, _, group = desired.owner.partition(':')
            if probed.stat.owner != user or (group and probed.stat.group != group):
                differences.append(f'owner {probed.stat.owner}:{probed.stat.group} -> {desired.owner}')
        if not differences:
            return no_op(f"{desired.dest} is up to date")
        return must_apply(f"update {desired.dest}: {', '.join(differences)}")

    def apply(self, context, desired: TemplateFile, probed: FileFacts):
        with applying(f"template {desired.dest}"):
            context.host.write_bytes_atomic(
                desired.dest, desired.content, mode=desired.mode, owner=desired.owner)
