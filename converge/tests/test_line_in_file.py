# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import re
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from converge._engine import Engine
from converge._graph import build
from converge._line_in_file import LineInFileReconciler
from converge._line_in_file import patch_lines
from converge._report import Result
from converge._task import parse_tasks
from host_access import Target
from host_access import open_host

_config = (
    "# DB_NAME=example\n"
    "DB_USER=admin\n"
    "DB_NAME=old\n"
    "DB_NAME=older\n"
    )


class TestPatchLines(unittest.TestCase):

    def test_first_match_replaced(self):
        text = "DB_USER=admin\nDB_NAME=old\nDB_NAME=older\n"
        patched, what = patch_lines(text, re.compile('^DB_NAME='), 'DB_NAME=wp')
        self.assertEqual(patched, "DB_USER=admin\nDB_NAME=wp\nDB_NAME=older\n")
        self.assertEqual(what, "replace line 2")
        self.assertEqual(len(patched.splitlines()), len(text.splitlines()))

    def test_idempotent(self):
        text = "DB_USER=admin\nDB_NAME=old\nDB_NAME=older\n"
        patched, _ = patch_lines(text, re.compile('DB_NAME='), 'DB_NAME=wp')
        again, what = patch_lines(patched, re.compile('DB_NAME='), 'DB_NAME=wp')
        self.assertIsNone(again)
        self.assertEqual(what, "line 2 is as desired")

    def test_commented_match_is_first(self):
        patched, _ = patch_lines(_config, re.compile('DB_NAME='), 'DB_NAME=wp')
        self.assertEqual(patched.splitlines()[0], 'DB_NAME=wp')
        self.assertEqual(patched.splitlines()[2:], ['DB_NAME=old', 'DB_NAME=older'])

    def test_desired_line_later_than_match(self):
        # The line is already there: nothing is replaced.
        text = "#Port 22\nPort 2222\n"
        patched, what = patch_lines(text, re.compile('^Port '), 'Port 2222')
        self.assertIsNone(patched)
        self.assertEqual(what, "line 2 is as desired")

    def test_append(self):
        patched, what = patch_lines("a=1\n", re.compile('^b='), 'b=2')
        self.assertEqual(patched, "a=1\nb=2\n")
        self.assertEqual(what, "append line 2")

    def test_append_to_unterminated(self):
        patched, _ = patch_lines("a=1", re.compile('^b='), 'b=2')
        self.assertEqual(patched, "a=1\nb=2\n")

    def test_append_to_empty(self):
        patched, what = patch_lines("", re.compile('^b='), 'b=2')
        self.assertEqual(patched, "b=2\n")
        self.assertEqual(what, "append line 1")

    def test_crlf_kept(self):
        patched, _ = patch_lines("a=1\r\nb=1\r\n", re.compile('^b='), 'b=2')
        self.assertEqual(patched, "a=1\r\nb=2\r\n")

    def test_unterminated_last_line_kept_unterminated(self):
        patched, _ = patch_lines("a=1\nb=1", re.compile('^b='), 'b=2')
        self.assertEqual(patched, "a=1\nb=2")


class TestLineInFileOnHost(unittest.TestCase):

    def setUp(self):
        self._dir = TemporaryDirectory()
        self._root = Path(self._dir.name)
        self._host = open_host(Target('local', 'root'))
        reconciler = LineInFileReconciler()
        self._registry = {reconciler.kind: reconciler}

    def tearDown(self):
        self._dir.cleanup()

    def _run(self, **parameters):
        tasks = parse_tasks(
            [{'name': 'line', 'kind': 'line_in_file', 'parameters': parameters}],
            {'line_in_file': LineInFileReconciler.required})
        return Engine(self._host, self._registry).run(build(tasks)).outcome('line')

    def test_replace_then_unchanged(self):
        path = self._root / 'wp.conf'
        path.write_text(_config)
        path.chmod(0o640)
        parameters = {'path': str(path), 'match': '^DB_NAME=', 'line': 'DB_NAME=wordpress'}
        first = self._run(**parameters)
        self.assertEqual(first.result, Result.CHANGED, first.detail)
        self.assertEqual(path.read_text().splitlines(), [
            '# DB_NAME=example',
            'DB_USER=admin',
            'DB_NAME=wordpress',
            'DB_NAME=older',
            ])
        self.assertEqual(path.stat().st_mode & 0o7777, 0o640)
        second = self._run(**parameters)
        self.assertEqual(second.result, Result.UNCHANGED, second.detail)
        self.assertEqual(len(path.read_text().splitlines()), 4)

    def test_missing_file(self):
        path = self._root / 'absent.conf'
        outcome = self._run(path=str(path), match='^x=', line='x=1')
        self.assertEqual(outcome.result, Result.FAILED)
        self.assertIn("does not exist", outcome.detail)
        self.assertFalse(path.exists())

    def test_missing_file_created(self):
        path = self._root / 'new.conf'
        outcome = self._run(path=str(path), match='^x=', line='x=1', create='true')
        self.assertEqual(outcome.result, Result.CHANGED, outcome.detail)
        self.assertEqual(path.read_text(), 'x=1\n')
        outcome = self._run(path=str(path), match='^x=', line='x=1', create='true')
        self.assertEqual(outcome.result, Result.UNCHANGED, outcome.detail)

    def test_invalid_pattern(self):
        path = self._root / 'x.conf'
        path.write_text('x=0\n')
        outcome = self._run(path=str(path), match='^x=(', line='x=1')
        self.assertEqual(outcome.result, Result.FAILED)
        self.assertIn("not a valid regular expression", outcome.detail)
        self.assertEqual(path.read_text(), 'x=0\n')


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)7s %(name)s %(message).5000s",
        )
    unittest.main()
