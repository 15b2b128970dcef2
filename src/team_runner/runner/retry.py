"""Bounded retry for status store calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from team_runner.errors import StoreUnavailableError

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreRetryPolicy:
    """Re-issue a store call after ``StoreUnavailableError``.

    Conditional updates are safe to re-issue: the condition is evaluated
    again against the current status.
    """

    retries: int = 2
    backoff_s: float = 0.5

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        last_error: StoreUnavailableError | None = None
        for attempt in range(self.retries + 1):
            try:
                return fn(*args, **kwargs)
            except StoreUnavailableError as exc:
                last_error = exc
                logger.warning(
                    "store call failed attempt=%d/%d op=%s reason=%s",
                    attempt + 1,
                    self.retries + 1,
                    getattr(fn, "__name__", "call"),
                    exc,
                )
                if attempt < self.retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s * (attempt + 1))
        if last_error is None:
            raise StoreUnavailableError("Store call failed with unknown error")
        raise last_error
