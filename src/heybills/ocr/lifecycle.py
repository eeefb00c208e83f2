"""Lifecycle management for the process-wide OCR engine.

The manager owns a single lazily constructed engine and is the only place that knows
whether it is usable. All state lives behind one ``threading.Condition``:

* the first caller to find the engine missing starts construction on a daemon thread and
  then waits like everyone else, so every caller is bounded by ``init_timeout``;
* waiters block on the condition (no polling) and re-check the published state when woken;
* a failed construction is cached for a cool-down window during which ``acquire`` fails
  fast with the same classified error, without touching the factory.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from heybills import metrics
from heybills.config import Settings
from heybills.errors import (
    ErrorCode,
    ErrorInfo,
    EngineUnavailable,
    HeyBillsError,
    classify,
    to_exception,
)
from heybills.models.engine import EngineStatus
from heybills.ocr.engine import OcrEngine

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class EngineHandle:
    engine: OcrEngine
    created_at: datetime
    generation: int


@dataclass(frozen=True)
class CooldownPolicy:
    """How long a failed engine stays failed before the next acquire retries construction."""

    base_seconds: float = 300.0
    backoff_multiplier: float = 2.0
    max_seconds: float = 1800.0
    incompatible_seconds: float = 1800.0
    busy_retry_after: float = 5.0

    def cooldown_for(self, info: ErrorInfo, consecutive_failures: int) -> float:
        if info.code is ErrorCode.OCR_SYSTEM_INCOMPATIBLE:
            return self.incompatible_seconds
        exponent = max(consecutive_failures - 1, 0)
        return min(self.base_seconds * (self.backoff_multiplier**exponent), self.max_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CooldownPolicy":
        return cls(
            base_seconds=settings.ocr_cooldown_seconds,
            backoff_multiplier=settings.ocr_cooldown_backoff,
            max_seconds=settings.ocr_cooldown_max_seconds,
            incompatible_seconds=settings.ocr_incompatible_cooldown_seconds,
            busy_retry_after=settings.ocr_busy_retry_after,
        )


def _retry_after(seconds: float) -> int:
    return max(1, math.ceil(seconds))


class EngineLifecycleManager:
    """Race-safe owner of the OCR engine handle with cached-failure semantics."""

    def __init__(
        self,
        factory: Callable[[], OcrEngine],
        *,
        init_timeout: float = 30.0,
        policy: CooldownPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self._init_timeout = init_timeout
        self._policy = policy or CooldownPolicy()
        self._clock = clock
        self._condition = threading.Condition()

        self._state = EngineState.UNINITIALIZED
        self._handle: Optional[EngineHandle] = None
        self._attempt = 0
        self._failed_attempt = 0
        self._generation = 0
        self._error: Optional[ErrorInfo] = None
        self._error_message: Optional[str] = None
        self._failed_at: Optional[float] = None
        self._cooldown = 0.0
        self._consecutive_failures = 0
        self._closed = False
        self._publish_state_metric()

    @property
    def state(self) -> EngineState:
        with self._condition:
            return self._state

    @property
    def policy(self) -> CooldownPolicy:
        return self._policy

    def acquire(self) -> EngineHandle:
        """Return the ready engine handle or raise a classified ``EngineUnavailable``."""

        deadline = time.monotonic() + self._init_timeout
        witnessed_attempt: Optional[int] = None
        with self._condition:
            while True:
                if self._closed:
                    raise EngineUnavailable("OCR engine has been shut down")

                if self._state is EngineState.READY and self._handle is not None:
                    return self._handle

                if self._state is EngineState.FAILED:
                    # Callers that waited on an attempt report its outcome instead of retrying.
                    if witnessed_attempt is not None and witnessed_attempt == self._failed_attempt:
                        raise self._cached_failure()
                    if self._cooldown_remaining() > 0:
                        raise self._cached_failure()
                    logger.info("OCR engine cool-down elapsed; retrying initialization")
                    self._begin_initialization()
                    continue

                if self._state is EngineState.UNINITIALIZED:
                    self._begin_initialization()
                    continue

                witnessed_attempt = self._attempt
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(
                        "Timed out after %.1fs waiting for OCR engine initialization",
                        self._init_timeout,
                        extra={"engine_state": self._state.value},
                    )
                    raise EngineUnavailable(
                        "OCR engine is still initializing",
                        retry_after=_retry_after(self._policy.busy_retry_after),
                    )
                self._condition.wait(remaining)

    def mark_failed(self, handle: EngineHandle, cause: BaseException) -> bool:
        """Record that ``handle`` crashed; returns False when the report is stale."""

        info = classify(cause)
        with self._condition:
            if self._state is not EngineState.READY or self._handle is not handle:
                logger.debug("Ignoring failure report for stale engine generation=%s", handle.generation)
                return False
            self._handle = None
            self._record_failure(info, str(cause), self._attempt)
        logger.error(
            "OCR engine generation=%s crashed code=%s: %s",
            handle.generation,
            info.code.value,
            cause,
            extra={"engine_state": EngineState.FAILED.value},
        )
        self._close_engine(handle)
        return True

    def retry(self) -> bool:
        """Clear the cool-down so the next acquire re-attempts construction."""

        with self._condition:
            if self._state is not EngineState.FAILED:
                return False
            self._failed_at = None
            self._cooldown = 0.0
            self._failed_attempt = 0
        logger.info("OCR engine cool-down cleared by explicit retry")
        return True

    def reset(self) -> None:
        """Drop any engine and cached failure, returning to ``uninitialized``."""

        with self._condition:
            handle = self._handle
            self._clear()
            self._condition.notify_all()
        logger.info("OCR engine reset")
        if handle is not None:
            self._close_engine(handle)

    def shutdown(self) -> None:
        with self._condition:
            handle = self._handle
            self._clear()
            self._closed = True
            self._condition.notify_all()
        logger.info("OCR engine shut down")
        if handle is not None:
            self._close_engine(handle)

    def status(self) -> EngineStatus:
        with self._condition:
            remaining = self._cooldown_remaining() if self._state is EngineState.FAILED else None
            return EngineStatus(
                state=self._state.value,
                generation=self._generation,
                created_at=self._handle.created_at if self._handle else None,
                last_error_code=self._error.code if self._error else None,
                last_error_message=self._error_message,
                consecutive_failures=self._consecutive_failures,
                cooldown_remaining_seconds=remaining,
            )

    # Everything below expects ``self._condition`` to be held unless noted.

    def _begin_initialization(self) -> None:
        self._attempt += 1
        attempt = self._attempt
        self._set_state(EngineState.INITIALIZING)
        logger.info("Initializing OCR engine attempt=%s", attempt)
        worker = threading.Thread(
            target=self._initialize,
            args=(attempt,),
            name=f"ocr-engine-init-{attempt}",
            daemon=True,
        )
        worker.start()

    def _initialize(self, attempt: int) -> None:
        # Runs on the construction thread without the lock held.
        started = time.monotonic()
        try:
            engine = self._factory()
        except Exception as exc:
            info = classify(exc, during_init=True)
            with self._condition:
                if not self._is_current(attempt):
                    return
                self._record_failure(info, str(exc), attempt)
                cooldown = self._cooldown
                self._condition.notify_all()
            metrics.OCR_ENGINE_INITS.labels(outcome=info.code.value).inc()
            logger.error(
                "OCR engine initialization failed attempt=%s code=%s cooldown=%.0fs: %s",
                attempt,
                info.code.value,
                cooldown,
                exc,
                extra={"engine_state": EngineState.FAILED.value},
            )
            return

        with self._condition:
            if not self._is_current(attempt):
                stale = EngineHandle(engine=engine, created_at=datetime.now(timezone.utc), generation=0)
            else:
                stale = None
                self._generation += 1
                self._handle = EngineHandle(
                    engine=engine,
                    created_at=datetime.now(timezone.utc),
                    generation=self._generation,
                )
                self._consecutive_failures = 0
                self._error = None
                self._error_message = None
                self._failed_at = None
                self._set_state(EngineState.READY)
                self._condition.notify_all()

        if stale is not None:
            logger.info("Discarding OCR engine from superseded attempt=%s", attempt)
            self._close_engine(stale)
            return
        metrics.OCR_ENGINE_INITS.labels(outcome="ready").inc()
        logger.info(
            "OCR engine ready attempt=%s generation=%s in %.2fs",
            attempt,
            self._generation,
            time.monotonic() - started,
            extra={"engine_state": EngineState.READY.value},
        )

    def _is_current(self, attempt: int) -> bool:
        return attempt == self._attempt and self._state is EngineState.INITIALIZING and not self._closed

    def _record_failure(self, info: ErrorInfo, message: str, attempt: int) -> None:
        self._consecutive_failures += 1
        self._error = info
        self._error_message = message
        self._failed_attempt = attempt
        self._failed_at = self._clock()
        self._cooldown = self._policy.cooldown_for(info, self._consecutive_failures)
        self._set_state(EngineState.FAILED)

    def _cooldown_remaining(self) -> float:
        if self._failed_at is None:
            return 0.0
        return max(0.0, self._cooldown - (self._clock() - self._failed_at))

    def _cached_failure(self) -> HeyBillsError:
        assert self._error is not None
        remaining = self._cooldown_remaining()
        return to_exception(
            self._error,
            retry_after=_retry_after(remaining) if remaining > 0 else self._error.default_retry_after,
            message=self._error_message,
        )

    def _clear(self) -> None:
        self._handle = None
        self._error = None
        self._error_message = None
        self._failed_at = None
        self._failed_attempt = 0
        self._cooldown = 0.0
        self._consecutive_failures = 0
        # Bumping the attempt orphans any construction still in flight.
        self._attempt += 1
        self._set_state(EngineState.UNINITIALIZED)

    def _set_state(self, state: EngineState) -> None:
        self._state = state
        self._publish_state_metric()

    def _publish_state_metric(self) -> None:
        for candidate in EngineState:
            metrics.OCR_ENGINE_STATE.labels(state=candidate.value).set(1 if candidate is self._state else 0)

    @staticmethod
    def _close_engine(handle: EngineHandle) -> None:
        # Called without the lock held.
        try:
            handle.engine.close()
        except Exception:
            logger.exception("Error while closing OCR engine generation=%s", handle.generation)


__all__ = ["CooldownPolicy", "EngineHandle", "EngineLifecycleManager", "EngineState"]
