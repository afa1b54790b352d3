import os
import sys
import time
from contextlib import contextmanager
from functools import wraps
from typing import Optional

from loguru import logger


def configure_logging(log_file: Optional[str] = None):
    """Log to stderr at $LOG_LEVEL (default INFO), and optionally to `log_file`"""
    logger.remove()
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logger.add(sys.stderr, level=log_level)
    if log_file:
        logger.add(sink=log_file, rotation="500 MB", level=log_level)


@contextmanager
def timed(label: str):
    """Context manager to time a code block"""
    start = time.perf_counter()
    yield
    elapsed = time.perf_counter() - start
    logger.debug(f"{label} took {elapsed:.4f}s")


def timed_func(func):
    """Decorator to time a function"""
    funcname = func.__qualname__

    @wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        result = func(*args, **kwargs)
        elapsed = time.perf_counter() - start
        logger.debug(f"{funcname} took {elapsed:.4f}s")
        return result

    return wrapper


def format_hh_mm_ss(total_seconds: int) -> str:
    """
    Formats `total_seconds` to 00:00:00 format

    Parameters
    ----------
    total_seconds: int

    Returns
    -------
    `total_seconds` formatted as 00:00:00

    """
    hours, rem = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class ProgressLogger:
    """
    Log progress every `log_every` * `total` iterations
    """

    def __init__(self, desc: str, total: int, log_every: float | int = 0.1):
        """

        Parameters
        ----------
        desc: prefix of each log line
        total: total things to iterate over
        log_every: fraction of total (float) or number of iterations (int) between logs
        """
        self._total = total
        self._start = time.time()
        self._completed = 0
        self._desc = desc

        self._log_every = (
            max(1, int(log_every * total)) if isinstance(log_every, float) else max(1, log_every)
        )

    @property
    def completed(self) -> int:
        return self._completed

    def log_progress(self, other: Optional[str] = None) -> bool:
        """
        Record one completed iteration and log if due

        Returns
        -------
        whether a line was logged
        """
        self._completed += 1
        elapsed = time.time() - self._start

        rate = self._completed / elapsed if elapsed > 0 else float("inf")
        remaining = self._total - self._completed
        eta = remaining / rate if rate > 0 else float("inf")

        if self._completed % self._log_every == 0 or self._completed == self._total:
            other = '' if other is None else other
            eta_str = format_hh_mm_ss(int(eta)) if eta != float("inf") else '??:??:??'
            logger.info(
                f"{self._desc}: {self._completed}/{self._total} [{format_hh_mm_ss(int(elapsed))}<{eta_str}] {other}"
            )
            return True
        return False
