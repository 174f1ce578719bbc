# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Run a plan layer by layer, tasks of a layer concurrently.

A run goes Pending, Running, then Succeeded or Failed. A task goes Queued,
Probing, Reconciling, then Done or Errored. Whatever happens inside a task
ends up in its outcome: run() raises only on programming errors in the
engine itself.

Fail-fast: when a task fails, the other tasks of its layer finish and no
later layer starts. Cancellation: tasks that have not started yet do not
start; running ones finish.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import Any
from typing import Callable
from typing import List
from typing import Mapping
from typing import Optional
from typing import Tuple

from converge._db_servers import DatabaseServer
from converge._db_servers import DatabaseServers
from converge._db_servers import ServerSpec
from converge._exceptions import ConvergeError
from converge._exceptions import ReconcileError
from converge._facts import FactProbe
from converge._graph import ExecutionPlan
from converge._logging import redacted_logging
from converge._reconciler import Action
from converge._reconciler import Context
from converge._reconciler import Reconciler
from converge._report import Result
from converge._report import RunReport
from converge._report import TaskOutcome
from converge._secrets import Redactor
from converge._secrets import SecretResolver
from converge._secrets import SecretStorage
from converge._task import ChangePolicy
from converge._task import Task
from host_access import Host

_logger = logging.getLogger(__name__)


class Engine:

    def __init__(
            self,
            host: Host,
            registry: Mapping[str, Reconciler],
            redactor: Optional[Redactor] = None,
            secret_storage: Optional[SecretStorage] = None,
            template_vars: Optional[Mapping[str, Any]] = None,
            template_dir: Path = Path('.'),
            concurrency: int = 4,
            check=False,
            install_timeout_sec: float = 600,
            database_servers: Optional[Callable[[ServerSpec], DatabaseServer]] = None,
            ):
        if concurrency < 1:
            raise ValueError(f"Concurrency must be at least 1, got {concurrency}")
        self._host = host
        self._registry = registry
        self.redactor = redactor or Redactor()
        self._secret_storage = secret_storage
        self._template_vars = dict(template_vars or {})
        self._template_dir = template_dir
        self._concurrency = concurrency
        self._check = check
        self._install_timeout_sec = install_timeout_sec
        self._database_servers = database_servers

    def __repr__(self):
        return f'<Engine on {self._host.name}>'

    def run(self, plan: ExecutionPlan, cancel: Optional[threading.Event] = None) -> RunReport:
        cancel = cancel or threading.Event()
        _logger.info("%r: run is Pending: %d tasks in %d layers", self, len(plan.tasks), len(plan.layers))
        if self._database_servers is None:
            database_servers = DatabaseServers(self._host)
            close_database_servers = database_servers.close
        else:
            database_servers = self._database_servers
            close_database_servers = None
        context = Context(
            host=self._host,
            probe=FactProbe(self._host, database_servers),
            secrets=SecretResolver(self.redactor, self._secret_storage),
            database_servers=database_servers,
            template_vars=self._template_vars,
            template_dir=self._template_dir,
            install_timeout_sec=self._install_timeout_sec,
            )
        outcomes: List[Optional[TaskOutcome]] = [None] * len(plan.tasks)
        cancelled = False
        with redacted_logging(self.redactor):
            _logger.info("%r: run is Running", self)
            try:
                with ThreadPoolExecutor(self._concurrency, thread_name_prefix='task') as executor:
                    for layer_index, layer in enumerate(plan.layers):
                        if cancel.is_set():
                            _logger.warning("%r: cancelled before layer %d", self, layer_index)
                            cancelled = True
                            break
                        _logger.debug("%r: layer %d: %s", self, layer_index, ', '.join(t.name for t in layer))
                        by_name = {o.task_name: o for o in outcomes if o is not None}
                        futures = []
                        for task in layer:
                            _logger.debug("%s: Queued", task.name)
                            dependency_outcomes = [by_name[d] for d in plan.dependencies[task.name]]
                            futures.append(executor.submit(
                                self._run_task, context, task, dependency_outcomes, cancel))
                        failed = []
                        for task, future in zip(layer, futures):
                            outcome = future.result()
                            if outcome is None:
                                cancelled = True
                                continue
                            outcomes[plan.position(task.name)] = outcome
                            if outcome.result == Result.FAILED:
                                failed.append(task.name)
                        if failed:
                            _logger.error(
                                "%r: layer %d failed: %s; later layers are not run",
                                self, layer_index, ', '.join(failed))
                            break
            finally:
                if close_database_servers is not None:
                    close_database_servers()
            if cancel.is_set() and not cancelled:
                _logger.warning("%r: cancelled while the last layer was running", self)
                cancelled = True
            report = RunReport([o for o in outcomes if o is not None], cancelled=cancelled)
            _logger.info(
                "%r: run is %s", self, 'Succeeded' if report.failed_task is None and not cancelled else 'Failed')
        return report

    def _run_task(
            self,
            context: Context,
            task: Task,
            dependency_outcomes: List[TaskOutcome],
            cancel: threading.Event,
            ) -> Optional[TaskOutcome]:
        if cancel.is_set():
            _logger.info("%s: not started: run is cancelled", task.name)
            return None
        started_at = datetime.now(timezone.utc)
        try:
            result, detail = self._converge(context, task, dependency_outcomes)
        except ConvergeError as e:
            _logger.error("%s: Errored: %s", task.name, e)
            result, detail = Result.FAILED, f"{e.__class__.__name__}: {e}"
        except Exception as e:
            _logger.exception("%s: Errored unexpectedly", task.name)
            result, detail = Result.FAILED, f"{e.__class__.__name__}: {e}"
        else:
            _logger.debug("%s: Done: %s", task.name, result.value)
        ended_at = datetime.now(timezone.utc)
        return TaskOutcome(task.name, result, self.redactor.redact(detail), started_at, ended_at)

    def _converge(
            self,
            context: Context,
            task: Task,
            dependency_outcomes: List[TaskOutcome],
            ) -> Tuple[Result, str]:
        reconciler = self._registry.get(task.kind)
        if reconciler is None:
            raise ReconcileError(f"No reconciler for kind {task.kind!r}")
        if task.change_policy == ChangePolicy.WHEN_CHANGED:
            # In check mode a dependency that would change counts as changed.
            if not any(o.result == Result.CHANGED for o in dependency_outcomes):
                return Result.UNCHANGED, "skipped: no dependency changed"
        policy = ChangePolicy.CHECK if self._check else task.change_policy
        _logger.debug("%s: Probing", task.name)
        desired = reconciler.desired(task.parameters, context)
        probed = reconciler.probe(context, desired)
        _logger.debug("%s: Reconciling", task.name)
        decision = reconciler.reconcile(desired, probed)
        if decision.action == Action.NO_OP:
            return Result.UNCHANGED, decision.detail
        if policy == ChangePolicy.CHECK:
            return Result.CHANGED, f"would: {decision.detail}"
        note = reconciler.apply(context, desired, probed)
        _logger.info("%s: changed: %s", task.name, decision.detail)
        if note:
            return Result.CHANGED, f"{decision.detail}; {note}"
        return Result.CHANGED, decision.detail
