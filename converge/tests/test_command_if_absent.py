# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from converge._command_if_absent import CommandIfAbsentReconciler
from converge._engine import Engine
from converge._graph import build
from converge._report import Result
from converge._task import parse_tasks
from host_access import Target
from host_access import open_host


class TestCommandIfAbsent(unittest.TestCase):

    def setUp(self):
        self._dir = TemporaryDirectory()
        self._root = Path(self._dir.name)
        self._host = open_host(Target('local', 'root'))
        reconciler = CommandIfAbsentReconciler()
        self._registry = {reconciler.kind: reconciler}

    def tearDown(self):
        self._dir.cleanup()

    def _run(self, **parameters):
        tasks = parse_tasks(
            [{'name': 'cmd', 'kind': 'command_if_absent', 'parameters': parameters}],
            {'command_if_absent': CommandIfAbsentReconciler.required})
        return Engine(self._host, self._registry).run(build(tasks)).outcome('cmd')

    def test_runs_once(self):
        marker = self._root / 'installed'
        parameters = {
            'command': f'echo run >> runs.log && touch {marker.name}',
            'creates': str(marker),
            'chdir': str(self._root),
            }
        first = self._run(**parameters)
        self.assertEqual(first.result, Result.CHANGED, first.detail)
        second = self._run(**parameters)
        self.assertEqual(second.result, Result.UNCHANGED, second.detail)
        self.assertEqual((self._root / 'runs.log').read_text(), 'run\n')

    def test_marker_not_created(self):
        marker = self._root / 'never'
        outcome = self._run(command='true', creates=str(marker))
        self.assertEqual(outcome.result, Result.CHANGED)
        self.assertIn("still absent", outcome.detail)

    def test_command_fails(self):
        marker = self._root / 'never'
        outcome = self._run(command='echo broken >&2; exit 3', creates=str(marker))
        self.assertEqual(outcome.result, Result.FAILED)
        self.assertIn("exit status 3", outcome.detail)
        self.assertIn("broken", outcome.detail)

    def test_chdir_missing(self):
        outcome = self._run(command='touch x', creates=str(self._root / 'x'), chdir=str(self._root / 'absent dir'))
        self.assertEqual(outcome.result, Result.FAILED)
        self.assertFalse((self._root / 'x').exists())


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)7s %(name)s %(message).5000s",
        )
    unittest.main()
