"""Helpers for running functions periodically and for closing resources safely."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, Protocol, TypeVar

__all__ = [
    "Closer",
    "Stopper",
    "close_with_err_capture",
    "close_with_log_on_err",
    "repeat",
    "retry",
    "retry_with_log",
]

T = TypeVar("T")

_log = logging.getLogger(__name__)

_nop_log = logging.getLogger(f"{__name__}.nop")
_nop_log.addHandler(logging.NullHandler())
_nop_log.propagate = False


class Stopper(Protocol):
    """Anything that can be waited on like :class:`threading.Event`."""

    def wait(self, timeout: Optional[float] = None) -> bool: ...


class Closer(Protocol):
    """Anything with a ``close`` method."""

    def close(self) -> Any: ...


class _Ticker:
    """Fixed-rate schedule that drops ticks when the caller falls behind."""

    def __init__(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError(f"non-positive interval {interval!r}")
        self._interval = interval
        self._next = time.monotonic() + interval

    def remaining(self) -> float:
        return max(0.0, self._next - time.monotonic())

    def advance(self) -> None:
        now = time.monotonic()
        self._next += self._interval
        if self._next <= now:
            self._next = now + self._interval


def repeat(interval: float, stop: Stopper, f: Callable[[], Any]) -> None:
    """Call ``f`` now and then every ``interval`` seconds until ``stop`` is set.

    An exception raised by ``f`` ends the loop and propagates.
    """
    ticker = _Ticker(interval)
    while True:
        f()
        if stop.wait(ticker.remaining()):
            return
        ticker.advance()


def retry(interval: float, stop: Stopper, f: Callable[[], T]) -> T:
    """Call ``f`` every ``interval`` seconds until it succeeds or ``stop`` is set."""
    return retry_with_log(_nop_log, interval, stop, f)


def retry_with_log(
    logger: Optional[logging.Logger],
    interval: float,
    stop: Stopper,
    f: Callable[[], T],
) -> T:
    """Like :func:`retry`, logging every failure of ``f``.

    Returns what ``f`` returned on success. When ``stop`` is set before ``f``
    succeeds, the last exception raised by ``f`` is re-raised.
    """
    logger = logger or _nop_log
    ticker = _Ticker(interval)
    while True:
        try:
            return f()
        except Exception as exc:
            logger.error("function failed. Retrying in next tick: %s", exc)
            if stop.wait(ticker.remaining()):
                raise
        ticker.advance()


def _describe(fmt: str, args: tuple) -> str:
    return fmt % args if args else fmt


def close_with_log_on_err(
    logger: Optional[logging.Logger], closer: Closer, fmt: str, *args: Any
) -> None:
    """Close ``closer`` and log, rather than raise, any error from doing so."""
    try:
        closer.close()
    except Exception as exc:
        (logger or _log).warning(
            "detected close error: %s: %s", _describe(fmt, args), exc
        )


def close_with_err_capture(
    logger: Optional[logging.Logger],
    err: Optional[BaseException],
    closer: Closer,
    fmt: str,
    *args: Any,
) -> Optional[BaseException]:
    """Close ``closer`` and return the error that should be reported.

    ``err`` is an error that already happened. If closing fails and there is
    no such error, the close error is returned. If there is one, it keeps
    priority and the close error is only logged.
    """
    try:
        closer.close()
    except Exception as close_exc:
        if err is None:
            return close_exc
        (logger or _log).warning(
            "detected best effort close error that was preempted from the "
            "more important one: %s: %s",
            _describe(fmt, args),
            close_exc,
        )
    return err