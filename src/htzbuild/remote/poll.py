"""Retry-with-delay polling shared by every wait in the build lifecycle."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, Field

from htzbuild.errors import ReadinessTimeout

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """How often to re-check a condition, and for how long.

    max_attempts=None polls until the predicate succeeds or raises.
    """

    model_config = ConfigDict(frozen=True)

    interval: float = Field(ge=0)
    max_attempts: int | None = Field(default=None, ge=1)
    name: str = "condition"

    @property
    def bounded(self) -> bool:
        return self.max_attempts is not None


SSH_READY = RetryPolicy(interval=5.0, max_attempts=60, name="SSH access")
APT_LOCK = RetryPolicy(interval=5.0, name="apt lock release")


def build_monitor(interval: float) -> RetryPolicy:
    """Unbounded policy for watching the detached build; it ends by success or a crash."""
    return RetryPolicy(interval=interval, name="build completion")


def poll_until(
    predicate: Callable[[], bool],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int], None] | None = None,
) -> int:
    """Evaluate *predicate* until it returns True. Returns the successful attempt number.

    Sleeps policy.interval between attempts (never after the last one).
    Exceptions from the predicate propagate unchanged. Raises
    ReadinessTimeout when a bounded policy is exhausted.
    """
    attempt = 0
    while True:
        attempt += 1
        if predicate():
            logger.debug("%s satisfied after %d attempt(s)", policy.name, attempt)
            return attempt
        if policy.max_attempts is not None and attempt >= policy.max_attempts:
            break
        if on_retry is not None:
            on_retry(attempt)
        sleep(policy.interval)

    raise ReadinessTimeout(f"Timeout waiting for {policy.name} after {attempt} attempts")
