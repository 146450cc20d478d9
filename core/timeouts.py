"""Wall-clock bounds for calls that cross the completion and tool boundaries."""
from __future__ import annotations

import concurrent.futures
from typing import Any, Callable, Optional, Type

from core.exceptions import CompletionTimeoutError
from core.logging_utils import log_json


def call_with_timeout(
    fn: Callable[..., Any],
    timeout_s: Optional[float],
    *args: Any,
    label: str = "call",
    error_cls: Type[Exception] = CompletionTimeoutError,
    **kwargs: Any,
) -> Any:
    """Run ``fn(*args, **kwargs)`` in a worker thread, waiting at most *timeout_s*.

    Exceptions raised by *fn* propagate unchanged. When the deadline passes the
    worker is abandoned (Python threads cannot be killed) and *error_cls* is
    raised. ``timeout_s=None`` calls *fn* inline.
    """
    if timeout_s is None:
        return fn(*args, **kwargs)

    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"taskloop-{label}")
    future = pool.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout_s)
    except concurrent.futures.TimeoutError:
        future.cancel()
        log_json("WARN", "call_timed_out", details={"label": label, "timeout_s": timeout_s})
        raise error_cls(f"{label} exceeded {timeout_s}s") from None
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


class TimedCompletion:
    """Completion service wrapper that enforces a per-call deadline."""

    def __init__(self, inner, timeout_s: Optional[float]):
        self.inner = inner
        self.timeout_s = timeout_s

    def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        return call_with_timeout(self.inner.complete, self.timeout_s, prompt,
                                 system_prompt=system_prompt, label="completion")

    def is_available(self) -> bool:
        checker = getattr(self.inner, "is_available", None)
        return bool(checker()) if callable(checker) else True
