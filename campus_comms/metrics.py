from __future__ import annotations

import functools
import logging
import time
from typing import Callable, TypeVar

from campus_comms.config import settings


logger = logging.getLogger('campus_comms.metrics')

T = TypeVar('T')


def timed_service(label: str, *, threshold_ms: int | None = None) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Log calls of the wrapped service that take longer than the slow threshold."""

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        threshold_value = threshold_ms if threshold_ms is not None else settings.metrics_slow_ms

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            started = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - started) * 1000.0
                if duration_ms >= threshold_value:
                    logger.info('service_timer label=%s duration_ms=%.2f', label, duration_ms)

        return wrapper

    return decorator


def run_timed_job(label: str, fn: Callable[[], T]) -> T:
    start = time.perf_counter()
    logger.info('job_start name=%s', label)
    status = 'ok'
    try:
        return fn()
    except Exception:
        status = 'failed'
        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.exception('job_failed name=%s duration_ms=%.2f', label, duration_ms)
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.info('job_end name=%s status=%s duration_ms=%.2f', label, status, duration_ms)
