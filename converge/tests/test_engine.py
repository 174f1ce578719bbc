# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import os
import threading
import unittest
from unittest.mock import patch

from converge._engine import Engine
from converge._graph import build
from converge._report import Result
from converge._report import RunStatus
from converge._secrets import MASK
from converge._task import ChangePolicy
from converge._task import parse_tasks
from converge.tests._fake_host import FakeSystem
from converge.tests._fake_host import make_fake_host
from converge.tests._fake_reconciler import KeyValueReconciler


def _task(name, key=None, value='on', depends_on=None, change_policy=None, **parameters):
    descriptor = {
        'name': name,
        'kind': 'key_value',
        'parameters': {'key': key or name, 'value': value, **parameters},
        }
    if depends_on is not None:
        descriptor['depends_on'] = depends_on
    if change_policy is not None:
        descriptor['change_policy'] = change_policy
    return descriptor


class TestEngine(unittest.TestCase):

    def setUp(self):
        self._reconciler = KeyValueReconciler()
        self._registry = {'key_value': self._reconciler}
        self._host, _ = make_fake_host(FakeSystem())

    def _run(self, descriptors, cancel=None, **engine_kwargs):
        plan = build(parse_tasks(descriptors, {'key_value': KeyValueReconciler.required}))
        engine = Engine(self._host, self._registry, **engine_kwargs)
        return engine.run(plan, cancel)

    def test_plain_list_runs_in_order(self):
        report = self._run([_task('c'), _task('a'), _task('b')])
        self.assertEqual(report.status, RunStatus.SUCCESS)
        self.assertEqual([o.task_name for o in report.outcomes], ['c', 'a', 'b'])
        self.assertEqual(self._reconciler.applied, ['c', 'a', 'b'])

    def test_report_keeps_declared_order_in_parallel_layer(self):
        names = [f'task{i:02d}' for i in range(20, 0, -1)]
        report = self._run([_task(name, depends_on=[]) for name in names], concurrency=8)
        self.assertEqual([o.task_name for o in report.outcomes], names)
        self.assertEqual(report.count(Result.CHANGED), 20)

    def test_second_run_is_unchanged(self):
        descriptors = [_task('a'), _task('b', depends_on=[]), _task('c', depends_on=['a', 'b'])]
        first = self._run(descriptors)
        self.assertEqual(first.count(Result.CHANGED), 3)
        second = self._run(descriptors)
        self.assertEqual(second.status, RunStatus.SUCCESS)
        self.assertEqual(second.count(Result.UNCHANGED), 3)
        self.assertEqual(sorted(self._reconciler.applied), ['a', 'b', 'c'])

    def test_fail_fast_lets_layer_drain(self):
        descriptors = [
            _task('a', fail='apply', depends_on=[]),
            _task('b', depends_on=[]),
            _task('c', depends_on=['a', 'b']),
            ]
        report = self._run(descriptors, concurrency=2)
        self.assertEqual(report.status, RunStatus.FAILED)
        self.assertEqual(report.failed_task, 'a')
        self.assertEqual(report.outcome('a').result, Result.FAILED)
        self.assertIn("Cannot set a to on", report.outcome('a').detail)
        self.assertEqual(report.outcome('b').result, Result.CHANGED)
        self.assertIsNone(report.outcome('c'))
        self.assertNotIn('c', self._reconciler.probed)

    def test_first_failed_task_in_declared_order(self):
        descriptors = [
            _task('x', fail='probe', depends_on=[]),
            _task('y', fail='apply', depends_on=[]),
            ]
        report = self._run(descriptors)
        self.assertEqual(report.failed_task, 'x')
        self.assertEqual(report.count(Result.FAILED), 2)
        self.assertTrue(report.outcome('x').detail.startswith('ProbeError: '))

    def test_unexpected_exception_is_outcome(self):
        report = self._run([_task('a', fail='crash')])
        self.assertEqual(report.outcome('a').result, Result.FAILED)
        self.assertEqual(report.outcome('a').detail, "RuntimeError: Store crashed on on")

    def test_unknown_kind_is_outcome(self):
        self._registry = {}
        report = self._run([_task('a')])
        self.assertEqual(report.outcome('a').result, Result.FAILED)
        self.assertIn("No reconciler for kind 'key_value'", report.outcome('a').detail)

    def test_cancel_stops_before_next_task(self):
        cancel = threading.Event()
        self._reconciler.on_probe['b'] = cancel.set
        report = self._run([_task('a'), _task('b'), _task('c')], cancel=cancel)
        self.assertEqual(report.status, RunStatus.FAILED)
        self.assertTrue(report.cancelled)
        self.assertIsNone(report.failed_task)
        self.assertEqual([o.task_name for o in report.outcomes], ['a', 'b'])
        self.assertEqual(report.outcome('b').result, Result.CHANGED)
        self.assertNotIn('c', self._reconciler.probed)

    def test_cancelled_before_start(self):
        cancel = threading.Event()
        cancel.set()
        report = self._run([_task('a'), _task('b', depends_on=[])], cancel=cancel)
        self.assertTrue(report.cancelled)
        self.assertEqual(report.outcomes, ())
        self.assertEqual(self._reconciler.probed, [])

    def test_check_mode_changes_nothing(self):
        self._reconciler.store['b'] = 'on'
        report = self._run([_task('a'), _task('b')], check=True)
        self.assertEqual(report.status, RunStatus.SUCCESS)
        self.assertEqual(report.outcome('a').result, Result.CHANGED)
        self.assertEqual(report.outcome('a').detail, "would: set a to on")
        self.assertEqual(report.outcome('b').result, Result.UNCHANGED)
        self.assertEqual(self._reconciler.applied, [])
        self.assertEqual(self._reconciler.store, {'b': 'on'})

    def test_check_policy_of_one_task(self):
        report = self._run([_task('a', change_policy='check'), _task('b')])
        self.assertEqual(report.outcome('a').detail, "would: set a to on")
        self.assertEqual(self._reconciler.applied, ['b'])

    def test_when_changed_runs_after_change(self):
        descriptors = [
            _task('config'),
            _task('restart', change_policy='when_changed'),
            ]
        first = self._run(descriptors)
        self.assertEqual(first.outcome('restart').result, Result.CHANGED)
        self._reconciler.store['restart'] = 'off'
        second = self._run(descriptors)
        self.assertEqual(second.outcome('config').result, Result.UNCHANGED)
        self.assertEqual(second.outcome('restart').result, Result.UNCHANGED)
        self.assertEqual(second.outcome('restart').detail, "skipped: no dependency changed")
        self.assertEqual(self._reconciler.store['restart'], 'off')
        self.assertEqual(self._reconciler.probed.count('restart'), 1)

    def test_when_changed_with_any_of_dependencies(self):
        self._reconciler.store['a'] = 'on'
        descriptors = [
            _task('a', depends_on=[]),
            _task('b', depends_on=[]),
            _task('c', depends_on=['a', 'b'], change_policy=ChangePolicy.WHEN_CHANGED.value),
            ]
        report = self._run(descriptors)
        self.assertEqual(report.outcome('a').result, Result.UNCHANGED)
        self.assertEqual(report.outcome('b').result, Result.CHANGED)
        self.assertEqual(report.outcome('c').result, Result.CHANGED)

    def test_check_mode_keeps_when_changed_gate(self):
        descriptors = [
            _task('config'),
            _task('restart', change_policy='when_changed'),
            ]
        self._reconciler.store['config'] = 'on'
        unchanged = self._run(descriptors, check=True)
        self.assertEqual(unchanged.outcome('restart').result, Result.UNCHANGED)
        self.assertEqual(unchanged.outcome('restart').detail, "skipped: no dependency changed")
        self._reconciler.store.clear()
        changed = self._run(descriptors, check=True)
        self.assertEqual(changed.outcome('config').detail, "would: set config to on")
        self.assertEqual(changed.outcome('restart').result, Result.CHANGED)
        self.assertEqual(changed.outcome('restart').detail, "would: set restart to on")
        self.assertEqual(self._reconciler.applied, [])

    def test_cancel_during_last_layer(self):
        cancel = threading.Event()
        self._reconciler.on_probe['b'] = cancel.set
        report = self._run([_task('a'), _task('b')], cancel=cancel)
        self.assertEqual([o.result for o in report.outcomes], [Result.CHANGED, Result.CHANGED])
        self.assertTrue(report.cancelled)
        self.assertEqual(report.status, RunStatus.FAILED)


class TestSecretRedaction(unittest.TestCase):

    _secret = 'pa55-w0rd-for-engine-test'

    def setUp(self):
        self._reconciler = KeyValueReconciler()
        self._host, _ = make_fake_host(FakeSystem())
        self._engine = Engine(self._host, {'key_value': self._reconciler})

    def _run(self, descriptors):
        plan = build(parse_tasks(descriptors, {'key_value': KeyValueReconciler.required}))
        return self._engine.run(plan)

    def test_secret_is_not_in_details(self):
        self._reconciler.store['unchanged'] = f'password={self._secret}'
        descriptors = [
            _task('changed', value='password={secret}', secret_ref='env:ENGINE_TEST_SECRET', depends_on=[]),
            _task('unchanged', value='password={secret}', secret_ref='env:ENGINE_TEST_SECRET', depends_on=[]),
            _task('failed', value='password={secret}', secret_ref='env:ENGINE_TEST_SECRET', fail='apply', depends_on=[]),
            ]
        with patch.dict(os.environ, {'ENGINE_TEST_SECRET': self._secret}):
            with self.assertLogs(level=logging.DEBUG) as logs:
                report = self._run(descriptors)
        self.assertEqual(report.outcome('changed').result, Result.CHANGED)
        self.assertEqual(report.outcome('unchanged').result, Result.UNCHANGED)
        self.assertEqual(report.outcome('failed').result, Result.FAILED)
        self.assertEqual(self._reconciler.store['changed'], f'password={self._secret}')
        for outcome in report.outcomes:
            self.assertNotIn(self._secret, outcome.detail)
            self.assertIn(f'password={MASK}', outcome.detail)
        self.assertNotIn(self._secret, report.to_json())
        self.assertNotIn(self._secret, report.format_text())
        for line in logs.output:
            self.assertNotIn(self._secret, line)

    def test_unresolved_reference_is_not_in_detail(self):
        os.environ.pop('ENGINE_TEST_MISSING_SECRET', None)
        descriptors = [_task('a', value='{secret}', secret_ref='env:ENGINE_TEST_MISSING_SECRET')]
        with self.assertLogs(level=logging.DEBUG) as logs:
            report = self._run(descriptors)
        outcome = report.outcome('a')
        self.assertEqual(outcome.result, Result.FAILED)
        self.assertTrue(outcome.detail.startswith('SecretResolutionError: '), outcome.detail)
        self.assertNotIn('ENGINE_TEST_MISSING_SECRET', outcome.detail)
        for line in logs.output:
            self.assertNotIn('ENGINE_TEST_MISSING_SECRET', line)


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)7s %(name)s %(message).5000s",
        )
    unittest.main()
