"""Circuit breaker guarding calls to the generation capability."""

from __future__ import annotations

import logging
import math
import threading
import time
from enum import Enum
from typing import Callable, Optional

from heybills.errors import GenerationFailed

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Open after ``failure_threshold`` consecutive failures; allow one trial after ``reset_seconds``."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = max(1, failure_threshold)
        self._reset_seconds = reset_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    def allow(self) -> None:
        """Raise ``GenerationFailed`` when calls are currently short-circuited."""

        with self._lock:
            if self._state is BreakerState.CLOSED:
                return
            if self._state is BreakerState.OPEN:
                remaining = self._reset_seconds - (self._clock() - (self._opened_at or 0.0))
                if remaining > 0:
                    raise GenerationFailed(
                        "Assistant is temporarily unavailable", retry_after=max(1, math.ceil(remaining))
                    )
                self._state = BreakerState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("Generation circuit half-open; allowing a trial call")
            if self._trial_in_flight:
                raise GenerationFailed("Assistant is temporarily unavailable")
            self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state is not BreakerState.CLOSED:
                logger.info("Generation circuit closed")
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._state is BreakerState.HALF_OPEN or self._failures >= self._failure_threshold:
                if self._state is not BreakerState.OPEN:
                    logger.warning("Generation circuit opened after %s failure(s)", self._failures)
                self._state = BreakerState.OPEN
                self._opened_at = self._clock()


__all__ = ["BreakerState", "CircuitBreaker"]
