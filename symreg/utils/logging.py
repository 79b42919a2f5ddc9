""" Logger configuration for the command line workflows """

import logging
import sys

from symreg.align import VerbosityLevels

_FORMAT = "[%(asctime)s][%(name)s] %(levelname)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


class CustomHandler(logging.StreamHandler):
    """Stream handler that can also own a log file.

    A record with an empty message produces a blank line, so workflows can
    separate blocks of output without a timestamp prefix.
    """

    def __init__(self, stream=None, filename=None):
        self._owned = None
        if filename is not None:
            self._owned = open(filename, "a", encoding="utf-8")
            stream = self._owned
        super().__init__(stream if stream is not None else sys.stdout)

    def format(self, record):
        if record.getMessage() == "":
            return ""
        return super().format(record)

    def close(self):
        try:
            if self._owned is not None and not self._owned.closed:
                self.flush()
                self._owned.close()
        finally:
            super().close()


def get_logger(name="symreg", filename=None, level=logging.INFO,
               force=False):
    """Configure and return the named logger.

    Modules log through ``logging.getLogger(__name__)``, hence configuring
    the "symreg" logger once covers the whole package. A logger that already
    has handlers is returned untouched unless `force` is set.

    Parameters
    ----------
    name : str, optional
    filename : str or None, optional
        append records to this file instead of writing them to stdout
    level : int, optional
        level of both the logger and its handler
    force : bool, optional
        drop (and close) the handlers already attached to the logger

    Returns
    -------
    logger : logging.Logger
    """
    logger = logging.getLogger(name)
    if logger.handlers and not force:
        return logger
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    handler = CustomHandler(filename=filename)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def verbosity_from_level(level):
    """Map a logging level to one of the `VerbosityLevels`."""
    if level <= logging.DEBUG:
        return VerbosityLevels.DIAGNOSE
    if level <= logging.INFO:
        return VerbosityLevels.STATUS
    return VerbosityLevels.NONE
