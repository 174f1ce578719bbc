# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import time
from abc import ABCMeta
from abc import abstractmethod
from subprocess import CalledProcessError
from subprocess import CompletedProcess
from subprocess import SubprocessError
from subprocess import TimeoutExpired
from typing import Optional
from typing import Sequence
from typing import Union

_logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 60

_Bytes = Union[bytes, bytearray, memoryview]


class CommandFailed(CalledProcessError):

    def __str__(self):
        stderr = (self.stderr or b'').decode(errors='backslashreplace').strip()[:2000]
        if self.returncode is None:
            result = "no exit status"
        else:
            result = f"exit status {self.returncode}"
        return f"Command {self.cmd} died with {result}: {stderr}"


class _Buffer:

    def __init__(self, name):
        self._name = name
        self._chunks = []
        self.closed = False

    def write(self, chunk: Optional[_Bytes]):
        if chunk is None:
            if not self.closed:
                self.closed = True
                _logger.debug("%s: closed", self._name)
        elif chunk:
            self._chunks.append(bytes(chunk))
            _logger.debug("%s: data: %s", self._name, chunk.decode(errors='backslashreplace'))

    def read(self) -> bytes:
        data = b''.join(self._chunks)
        self._chunks = []
        return data


class Run(metaclass=ABCMeta):
    """Process started on a host: local subprocess or SSH channel."""

    _defensive_timeout = 30

    def __init__(self, args):
        self.args = args

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.returncode is not None:
            self.close()
            return
        try:
            self.kill()
        except NotImplementedError:
            kill = "kill not implemented"
        else:
            kill = "kill attempted"
        try:
            self.wait(self._defensive_timeout)
        except TimeoutExpired:
            waiting = "timed out"
        else:
            waiting = "stopped"
        self.close()
        message = f"Command '%s' was working when __exit__ called, {kill}, {waiting}"
        if exc_type is None:
            raise SubprocessError(message % (self.args,))
        _logger.warning(message, self.args)

    @property
    @abstractmethod
    def returncode(self) -> Optional[int]:
        pass

    @abstractmethod
    def send(self, data: _Bytes, is_last=False) -> int:
        pass

    @abstractmethod
    def receive(self, timeout_sec: float):
        """Receive stdout chunk and stderr chunk; None if closed."""
        pass

    @abstractmethod
    def wait(self, timeout=None) -> int:
        pass

    @abstractmethod
    def kill(self):
        pass

    @abstractmethod
    def close(self):
        pass

    def communicate(
            self,
            input: Optional[_Bytes] = None,  # noqa PyShadowingBuiltins
            timeout_sec: float = DEFAULT_TIMEOUT_SEC,
            ):
        # Empty but not None input means "close stdin right away".
        left_to_send = None if input is None else memoryview(input)
        stdout = _Buffer('stdout')
        stderr = _Buffer('stderr')
        started_at = time.monotonic()
        while True:
            # Return code is read before receiving: for SSH it is set
            # in another thread, data may arrive right before it.
            returncode = self.returncode
            chunks = self.receive(timeout_sec=min(1., timeout_sec / 2.))
            for buffer, chunk in zip((stdout, stderr), chunks):
                buffer.write(chunk)
            if returncode is not None and stdout.closed and stderr.closed:
                break
            if time.monotonic() - started_at > timeout_sec:
                if returncode is not None:
                    _logger.debug("Exit with streams not closed")
                    break
                raise TimeoutExpired(self.args, timeout_sec, stdout.read(), stderr.read())
            if left_to_send is None:
                continue
            if returncode is not None:
                _logger.error("Exit with data yet to send")
                left_to_send = None
                continue
            sent_bytes = self.send(left_to_send, is_last=True)
            left_to_send = left_to_send[sent_bytes:]
            if not left_to_send:
                left_to_send = None
        return stdout.read(), stderr.read()


class Shell(metaclass=ABCMeta):

    @abstractmethod
    def Popen(self, args: Sequence[str]) -> Run:  # noqa PyPep8Naming
        pass

    def run(
            self,
            args: Sequence[str],
            input: Optional[_Bytes] = None,  # noqa PyShadowingBuiltins
            timeout_sec: float = DEFAULT_TIMEOUT_SEC,
            check=True,
            ) -> CompletedProcess:
        with self.Popen(args) as run:
            stdout, stderr = run.communicate(input=input, timeout_sec=timeout_sec)
            if check and run.returncode != 0:
                raise CommandFailed(run.returncode, args, stdout, stderr)
            return CompletedProcess(args, run.returncode, stdout, stderr)

    @abstractmethod
    def close(self):
        pass
