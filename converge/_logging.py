# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import logging.handlers
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from converge._secrets import Redactor

_FORMAT = '%(asctime)s %(name)s %(levelname)s %(message)s'


def init_logging(log_file: Optional[Path], verbose=False):
    logging.getLogger().setLevel(logging.DEBUG)
    if log_file is not None:
        _init_file_logging(log_file)
    _init_stream_logging(logging.INFO if verbose else logging.WARNING)
    # Paramiko logs every packet on DEBUG.
    logging.getLogger('paramiko').setLevel(logging.INFO)


def _init_file_logging(log_file: Path):
    log_file = log_file.expanduser()
    log_file.parent.mkdir(exist_ok=True, parents=True)
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=50 * 1024**2, backupCount=5)
    file_handler.setFormatter(logging.Formatter(_FORMAT))
    file_handler.setLevel(logging.DEBUG)
    logging.getLogger().addHandler(file_handler)


def _init_stream_logging(level):
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter('%(levelname)s %(message)s'))
    stream_handler.setLevel(level)
    logging.getLogger().addHandler(stream_handler)


class _RedactingFilter(logging.Filter):

    def __init__(self, redactor: Redactor):
        super().__init__()
        self._redactor = redactor

    def filter(self, record):
        message = record.getMessage()
        redacted = self._redactor.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info and not record.exc_text:
            # Formatters use the cached text instead of formatting again.
            record.exc_text = self._redactor.redact(_plain_formatter.formatException(record.exc_info))
        return True


_plain_formatter = logging.Formatter()


@contextmanager
def redacted_logging(redactor: Redactor):
    """Scrub registered secrets from everything the root handlers emit.

    Handler-level: logger-level filters are not applied to records
    propagated from child loggers.
    """
    log_filter = _RedactingFilter(redactor)
    handlers = list(logging.getLogger().handlers)
    for handler in handlers:
        handler.addFilter(log_filter)
    try:
        yield
    finally:
        for handler in handlers:
            handler.removeFilter(log_filter)
