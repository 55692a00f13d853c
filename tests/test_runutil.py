import logging
import threading

import pytest

from promfed.runutil import (
    close_with_err_capture,
    close_with_log_on_err,
    repeat,
    retry,
    retry_with_log,
)


class _Closer:
    def __init__(self, exc=None):
        self.exc = exc
        self.closed = 0

    def close(self):
        self.closed += 1
        if self.exc is not None:
            raise self.exc


def test_repeat_runs_until_stopped():
    stop = threading.Event()
    calls = []

    def f():
        calls.append(1)
        if len(calls) == 3:
            stop.set()

    result = repeat(0.01, stop, f)
    assert result is None
    assert len(calls) == 3
    assert stop.is_set()


def test_repeat_runs_once_before_checking_stop():
    stop = threading.Event()
    stop.set()
    calls = []
    repeat(0.01, stop, lambda: calls.append(1))
    assert calls == [1]


def test_repeat_propagates_error():
    stop = threading.Event()
    calls = []

    def f():
        calls.append(1)
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        repeat(0.01, stop, f)
    assert len(calls) == 1


def test_repeat_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        repeat(0, threading.Event(), lambda: None)


def test_retry_succeeds_after_failures():
    stop = threading.Event()
    attempts = []

    def f():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("not yet")
        return "done"

    assert retry(0.01, stop, f) == "done"
    assert len(attempts) == 3


def test_retry_raises_last_error_when_stopped():
    stop = threading.Event()
    stop.set()
    attempts = []

    def f():
        attempts.append(1)
        raise RuntimeError(f"attempt {len(attempts)}")

    with pytest.raises(RuntimeError, match="attempt 1"):
        retry(0.01, stop, f)
    assert len(attempts) == 1


def test_retry_with_log_logs_each_failure(caplog):
    logger = logging.getLogger("retry-test")
    stop = threading.Event()
    attempts = []

    def f():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("flaky")
        return len(attempts)

    with caplog.at_level(logging.ERROR, logger="retry-test"):
        assert retry_with_log(logger, 0.01, stop, f) == 3
    failures = [r for r in caplog.records if "flaky" in r.getMessage()]
    assert len(failures) == 2


def test_close_with_log_on_err_logs_failure(caplog):
    closer = _Closer(OSError("boom"))
    with caplog.at_level(logging.WARNING):
        close_with_log_on_err(logging.getLogger("close-test"), closer, "store %s connection close", "a")
    assert closer.closed == 1
    messages = [r.getMessage() for r in caplog.records]
    assert any("store a connection close" in m and "boom" in m for m in messages)


def test_close_with_log_on_err_quiet_on_success(caplog):
    closer = _Closer()
    with caplog.at_level(logging.WARNING):
        close_with_log_on_err(None, closer, "close")
    assert closer.closed == 1
    assert caplog.records == []


def test_close_with_err_capture_returns_close_error():
    close_exc = OSError("close failed")
    result = close_with_err_capture(None, None, _Closer(close_exc), "close")
    assert result is close_exc


def test_close_with_err_capture_keeps_existing_error(caplog):
    existing = ValueError("primary")
    with caplog.at_level(logging.WARNING):
        result = close_with_err_capture(
            logging.getLogger("capture-test"), existing, _Closer(OSError("secondary")), "file %s", "x"
        )
    assert result is existing
    assert any("secondary" in r.getMessage() for r in caplog.records)


def test_close_with_err_capture_no_errors():
    closer = _Closer()
    assert close_with_err_capture(None, None, closer, "close") is None
    assert closer.closed == 1