"""Bounded execution of calls into external collaborators."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable, TypeVar

T = TypeVar("T")


def call_with_timeout(
    func: Callable[..., T],
    *args: object,
    timeout_seconds: float,
    name: str,
) -> T:
    """Run ``func`` on a worker thread and wait at most ``timeout_seconds``.

    Exceptions raised by ``func`` propagate unchanged. A call that outlives
    the timeout raises ``TimeoutError``; the worker is abandoned, not killed.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"alerting-{name}")
    future = executor.submit(func, *args)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as exc:
        future.cancel()
        raise TimeoutError(f"{name} did not respond within {timeout_seconds}s") from exc
    finally:
        executor.shutdown(wait=False)
