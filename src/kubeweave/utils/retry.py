# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import time
import functools
from typing import Callable

class RetryError(RuntimeError):
    pass


def retry(
    *,
    retries: int | Callable[..., int],
    delay: float | Callable[..., float],
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
):
    """
    Retry decorator for idempotent operations.

    retries: number of attempts (or a callable taking the bound args)
    delay: seconds between attempts (same)
    retry_on: exception types to retry
    on_retry: callback(attempt, exception)
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            attempts = retries(*args, **kwargs) if callable(retries) else retries
            pause = delay(*args, **kwargs) if callable(delay) else delay
            last_exc = None
            for attempt in range(1, attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    if on_retry:
                        on_retry(attempt, exc)
                    if attempt == attempts:
                        break
                    time.sleep(pause)
            raise RetryError(f"{fn.__name__} failed after {attempts} attempts: {last_exc}") from last_exc
        return wrapper
    return decorator
