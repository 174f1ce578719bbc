# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import errno
import logging
import os
import signal
import subprocess
from collections import namedtuple
from selectors import DefaultSelector
from selectors import EVENT_READ

from host_access._command import Run
from host_access._command import Shell
from host_access._posix_shell import command_to_script

_logger = logging.getLogger(__name__)


class _LocalRun(Run):
    _Stream = namedtuple('_Stream', ['name', 'file_obj'])

    def __init__(self, args):
        process = subprocess.Popen(
            args,
            close_fds=True,
            bufsize=0,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            )
        super().__init__(args)
        self._process = process
        self._selector = DefaultSelector()
        self._streams = {}  # By file descriptor.
        self._register('stdout', self._process.stdout)
        self._register('stderr', self._process.stderr)

    def _register(self, name, file_obj):
        fd = file_obj.fileno()
        self._streams[fd] = self._Stream(name, file_obj)
        self._selector.register(fd, EVENT_READ)

    def _unregister(self, fd):
        self._selector.unregister(fd)
        self._streams[fd].file_obj.close()
        del self._streams[fd]

    @property
    def returncode(self):
        return self._process.poll()

    def send(self, data, is_last=False):
        try:
            written = self._process.stdin.write(data)
        except BrokenPipeError:
            # Process doesn't read its input: behave as if all has been written.
            _logger.debug("stdin: EPIPE")
            self._process.stdin.close()
            return len(data)
        if is_last and written == len(data):
            self._process.stdin.close()
        return written

    def receive(self, timeout_sec):
        received = {}
        if self._streams:
            for key, _events in self._selector.select(timeout_sec):
                stream = self._streams[key.fd]
                try:
                    chunk = os.read(key.fd, 16 * 1024)
                except OSError as e:
                    if e.errno != errno.EIO:
                        raise
                    chunk = b''
                if not chunk:
                    self._unregister(key.fd)
                    received[stream.name] = None
                else:
                    received[stream.name] = chunk
        for stream in self._streams.values():
            received.setdefault(stream.name, b'')
        return received.get('stdout'), received.get('stderr')

    def wait(self, timeout=None):
        return self._process.wait(timeout=timeout)

    def kill(self):
        self._process.send_signal(signal.SIGKILL)

    def close(self):
        for fd in list(self._streams):
            self._unregister(fd)
        self._selector.close()
        if self._process.stdin is not None and not self._process.stdin.closed:
            self._process.stdin.close()


class LocalShell(Shell):

    def __repr__(self):
        return '<LocalShell>'

    def Popen(self, args):
        args = [os.fspath(arg) if isinstance(arg, os.PathLike) else arg for arg in args]
        _logger.info("Run on %r: %s", self, command_to_script(args))
        return _LocalRun(args)

    def close(self):
        """Nothing to close."""
        pass


local_shell = LocalShell()
