"""
Valkey-backed locks that stop a periodic Celery task from overlapping with
a previous run of itself.
"""

import logging
from contextlib import contextmanager
from functools import wraps
from typing import Any
from collections.abc import Callable

from valkey import Valkey

from intelhub.config import settings

logger = logging.getLogger(__name__)

# Held at most this long if a worker dies without releasing
DEFAULT_LOCK_TIMEOUT_S = 15 * 60


def get_valkey_client() -> Valkey:
    return Valkey.from_url(settings.valkey_url, decode_responses=False)


@contextmanager
def acquire_task_lock(lock_name: str, timeout_s: int = DEFAULT_LOCK_TIMEOUT_S):
    """
    Try to take the lock ``celery:lock:<lock_name>`` without waiting.

    Yields:
        bool: True if this caller holds the lock
    """
    lock = get_valkey_client().lock(
        f"celery:lock:{lock_name}", timeout=timeout_s, blocking_timeout=0
    )

    acquired = False
    try:
        acquired = lock.acquire(blocking=False)
        if not acquired:
            logger.info(f"Task {lock_name} is already running elsewhere")
        yield acquired
    finally:
        if acquired:
            try:
                lock.release()
            except Exception as e:
                logger.warning(f"Error releasing lock for task {lock_name}: {e}")


def with_task_lock(lock_name: str | None = None, timeout_s: int = DEFAULT_LOCK_TIMEOUT_S):
    """Skip the decorated task when another instance holds its lock."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            name = lock_name or func.__name__
            with acquire_task_lock(name, timeout_s=timeout_s) as acquired:
                if not acquired:
                    return {"status": "skipped", "reason": "previous_task_still_running"}
                return func(*args, **kwargs)

        return wrapper

    return decorator
