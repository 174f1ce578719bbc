# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any
from typing import List
from typing import Mapping
from typing import Optional
from typing import Sequence

from converge._config import DEFAULT_CONFIG_PATHS
from converge._config import RunSettings
from converge._config import load_settings
from converge._engine import Engine
from converge._exceptions import ConvergeError
from converge._exceptions import GraphError
from converge._exceptions import TaskListError
from converge._graph import build
from converge._graph import find_conflicts
from converge._logging import init_logging
from converge._registry import default_registry
from converge._registry import required_parameters
from converge._report import RunReport
from converge._report import RunStatus
from converge._secrets import HttpSecretStorage
from converge._secrets import Redactor
from converge._secrets import SecretResolver
from converge._secrets import SecretStorage
from converge._task import load_tasks
from host_access import Target
from host_access import load_private_key
from host_access import open_host

_logger = logging.getLogger(__name__)

_EXIT_FAILED = 1
_EXIT_INVALID = 2


def main(args: Optional[Sequence[str]] = None) -> int:
    parsed_args = _parse_args(sys.argv[1:] if args is None else args)
    host_names = ['local'] if parsed_args.local else parsed_args.host
    config_paths = parsed_args.config or DEFAULT_CONFIG_PATHS
    try:
        settings = [load_settings(_target_host(name), *config_paths) for name in host_names]
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return _EXIT_INVALID
    init_logging(settings[0].log_file, parsed_args.verbose)
    registry = default_registry()
    try:
        tasks = load_tasks(parsed_args.tasks, required_parameters(registry))
        template_vars = _load_vars(parsed_args.vars) if parsed_args.vars else {}
        plan = build(tasks)
    except (TaskListError, GraphError) as e:
        _logger.error("%s", e)
        print(f"Invalid task list: {e}", file=sys.stderr)
        return _EXIT_INVALID
    for conflict in find_conflicts(plan, lambda task: registry[task.kind].resource(task.parameters)):
        _logger.warning(
            "Tasks %s and %s may run concurrently and both change %s",
            conflict.first, conflict.second, conflict.resource)
    cancel = threading.Event()
    _install_cancel_handlers(cancel)
    reports = []
    for host_name, host_settings in zip(host_names, settings):
        if cancel.is_set():
            _logger.warning("%s: not started: run is cancelled", host_name)
            reports.append((host_name, RunReport([], cancelled=True)))
            continue
        if parsed_args.concurrency is not None:
            host_settings = host_settings._replace(concurrency=parsed_args.concurrency)
        report = _run_on(
            host_name, host_settings, registry, plan, template_vars,
            parsed_args.tasks.parent, parsed_args.check, cancel)
        reports.append((host_name, report))
    _print_reports(reports, parsed_args.json)
    if all(report.status == RunStatus.SUCCESS for _, report in reports):
        return 0
    return _EXIT_FAILED


def _parse_args(args: Sequence[str]):
    parser = argparse.ArgumentParser(
        prog='converge',
        description="Bring hosts to the state described in a task list.")
    parser.add_argument('tasks', type=Path, help="JSON file with the task list.")
    targets = parser.add_mutually_exclusive_group(required=True)
    targets.add_argument(
        '--host', action='append', type=_host_argument,
        help="Target as [user@]host[:port]; may be given several times.")
    targets.add_argument('--local', action='store_true', help="Provision this machine.")
    parser.add_argument('--vars', type=Path, help="JSON object with template variables.")
    parser.add_argument('--check', action='store_true', help="Report what would change, change nothing.")
    parser.add_argument('--json', action='store_true', help="Print the report as JSON.")
    parser.add_argument('--concurrency', type=_positive_int, help="Tasks run at once within a layer.")
    parser.add_argument('--config', type=Path, action='append', help="INI file instead of the defaults.")
    parser.add_argument('--verbose', '-v', action='store_true')
    return parser.parse_args(args)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"Must be positive: {value}")
    return number


def _host_argument(value: str) -> str:
    _user, _, location = value.rpartition('@')
    host, _, port = location.partition(':')
    if not host:
        raise argparse.ArgumentTypeError(f"No host name in {value!r}")
    if port and not (port.isdigit() and 0 < int(port) < 65536):
        raise argparse.ArgumentTypeError(f"Invalid port in {value!r}")
    return value


def _target_host(host_name: str) -> str:
    return host_name.rpartition('@')[2].partition(':')[0]


def _target(host_name: str, settings: RunSettings) -> Target:
    if host_name == 'local':
        return Target('local', settings.ssh_user, settings.auth_reference)
    user, _, location = host_name.rpartition('@')
    host, _, port = location.partition(':')
    return Target(
        host,
        user or settings.ssh_user,
        settings.auth_reference,
        int(port) if port else settings.ssh_port,
        )


def _load_vars(path: Path) -> Mapping[str, Any]:
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as e:
        raise TaskListError(f"{path}: not a valid JSON: {e}")
    except OSError as e:
        raise TaskListError(f"{path}: cannot be read: {e.strerror}")
    if not isinstance(data, dict):
        raise TaskListError(f"{path}: template variables must be a JSON object")
    return data


def _install_cancel_handlers(cancel: threading.Event):

    def _cancel(signum, _frame):
        _logger.warning("Got signal %d: no new tasks will start", signum)
        cancel.set()

    signal.signal(signal.SIGINT, _cancel)
    signal.signal(signal.SIGTERM, _cancel)


def _run_on(host_name, settings: RunSettings, registry, plan, template_vars, template_dir, check, cancel):
    redactor = Redactor()
    target = _target(host_name, settings)
    _logger.info("Target %s", target)
    try:
        secret_storage = _secret_storage(settings)
        key = _ssh_key(target, SecretResolver(redactor, secret_storage))
    except (ConvergeError, OSError, RuntimeError, ValueError) as e:
        error = f"cannot prepare credentials: {redactor.redact(str(e))}"
        _logger.error("%s: %s", target, error)
        return RunReport([], error=error)
    host = open_host(target, key=key, sudo=settings.sudo, timeout_sec=settings.command_timeout_sec)
    engine = Engine(
        host,
        registry,
        redactor=redactor,
        secret_storage=secret_storage,
        template_vars=template_vars,
        template_dir=template_dir,
        concurrency=settings.concurrency,
        check=check,
        install_timeout_sec=settings.install_timeout_sec,
        )
    try:
        return engine.run(plan, cancel)
    finally:
        host.close()


def _secret_storage(settings: RunSettings) -> Optional[SecretStorage]:
    if settings.secret_storage_url is None:
        return None
    private_key = SecretStorage.load_private_key(settings.private_key_path)
    return HttpSecretStorage(settings.secret_storage_url, private_key)


def _ssh_key(target: Target, secrets: SecretResolver):
    if target.is_local() or target.auth_reference == 'agent':
        return None
    return load_private_key(secrets.resolve(target.auth_reference, f"SSH key for {target}"))


def _print_reports(reports: List, as_json: bool):
    if as_json:
        data = [{'host': host_name, **report.to_dict()} for host_name, report in reports]
        print(json.dumps(data[0] if len(data) == 1 else data, indent=2))
        return
    for host_name, report in reports:
        if len(reports) > 1:
            print(f'== {host_name}')
        print(report.format_text())


if __name__ == '__main__':
    exit(main(sys.argv[1:]))
