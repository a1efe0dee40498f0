"""
Bounded retries for storage calls that fail transiently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

from .errors import PersistenceFailure

logger = logging.getLogger(__name__)

# Type variable for the retry decorator
F = TypeVar("F", bound=Callable[..., Any])

_CONNECTION_KEYWORDS = (
    "connection",
    "server closed",
    "connection closed",
    "operationalerror",
    "timeout",
    "database is locked",
)


def is_connection_error(exc: BaseException) -> bool:
    """Heuristic: does this driver error look like a lost or busy connection?"""
    text = f"{type(exc).__name__} {exc}".lower()
    return any(keyword in text for keyword in _CONNECTION_KEYWORDS)


def retry_on_transient_failure(max_retries: int = 3, delay: float = 0.1):
    """
    Decorator to retry storage operations that raise a transient
    ``PersistenceFailure``. Permanent failures propagate immediately.
    """
    if max_retries < 1:
        raise ValueError(f"max_retries must be at least 1, got {max_retries}")

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except PersistenceFailure as e:
                    if not e.transient or attempt >= max_retries - 1:
                        raise
                    # Exponential backoff
                    wait_time = delay * (2**attempt)
                    logger.warning(
                        "Transient storage failure on attempt %d/%d, retrying in %.2fs: %s",
                        attempt + 1,
                        max_retries,
                        wait_time,
                        e,
                    )
                    await asyncio.sleep(wait_time)
            raise RuntimeError("Retry mechanism failed unexpectedly")

        return wrapper  # type: ignore

    return decorator
