import threading
import time

import pytest

from core.exceptions import CompletionTimeoutError, ToolExecutionError
from core.timeouts import TimedCompletion, call_with_timeout


def test_call_with_timeout_returns_value():
    assert call_with_timeout(lambda a, b=0: a + b, 1.0, 2, b=3) == 5


def test_call_with_timeout_none_runs_inline():
    caller = []
    call_with_timeout(lambda: caller.append(threading.current_thread()), None)
    assert caller == [threading.current_thread()]


def test_call_with_timeout_raises_configured_error():
    release = threading.Event()
    with pytest.raises(ToolExecutionError, match="tool exceeded"):
        call_with_timeout(release.wait, 0.05, 5, label="tool", error_cls=ToolExecutionError)
    release.set()


def test_call_with_timeout_propagates_exceptions():
    def boom():
        raise KeyError("missing")

    with pytest.raises(KeyError):
        call_with_timeout(boom, 1.0)


class _SlowModel:
    def __init__(self, delay):
        self.delay = delay

    def complete(self, prompt, system_prompt=None):
        time.sleep(self.delay)
        return "late"


class _PlainModel:
    def complete(self, prompt, system_prompt=None):
        return f"{system_prompt}:{prompt}"


def test_timed_completion_passes_arguments_through():
    model = TimedCompletion(_PlainModel(), 1.0)
    assert model.complete("hi", system_prompt="sys") == "sys:hi"
    assert model.is_available() is True


def test_timed_completion_times_out():
    model = TimedCompletion(_SlowModel(0.5), 0.05)
    started = time.time()
    with pytest.raises(CompletionTimeoutError):
        model.complete("hi")
    assert time.time() - started < 0.4
