"""Background worker that retries extractions which failed while OCR was unavailable."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

from heybills.models.receipt import ExtractionFailure, ExtractionRequest, ExtractionSuccess
from heybills.ocr.pipeline import ExtractionPipeline

logger = logging.getLogger(__name__)

ResultSink = Callable[[ExtractionRequest, ExtractionSuccess], None]


@dataclass
class _QueuedExtraction:
    request: ExtractionRequest
    attempts: int = 0
    not_before: float = 0.0


class ReprocessWorker:
    """Queue reprocessable failures and retry them once their cool-down has passed.

    Entries wait until the ``retry_after`` reported by the failure has elapsed, so an attempt
    is only spent when the engine may actually be constructed again. The queue holds at most
    ``max_pending`` requests; submissions past that are rejected.
    """

    def __init__(
        self,
        pipeline: ExtractionPipeline,
        sink: ResultSink,
        *,
        poll_interval: float = 30.0,
        batch_size: int = 5,
        max_attempts: int = 3,
        max_pending: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pipeline = pipeline
        self._sink = sink
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._max_pending = max_pending
        self._clock = clock
        self._queue: Deque[_QueuedExtraction] = deque()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def submit(self, request: ExtractionRequest, failure: ExtractionFailure) -> bool:
        """Queue ``request`` when its failure can be reprocessed later and there is room."""

        if not failure.reprocessable:
            return False
        extra = {"request_id": request.request_id}
        entry = _QueuedExtraction(request=request, not_before=self._due_after(failure))
        with self._lock:
            full = len(self._queue) >= self._max_pending
            if not full:
                self._queue.append(entry)
        if full:
            logger.warning(
                "Reprocess queue full (%s pending); rejecting receipt code=%s",
                self._max_pending,
                failure.code.value,
                extra=extra,
            )
            return False
        logger.info("Queued receipt for reprocessing code=%s", failure.code.value, extra=extra)
        return True

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def start(self) -> None:
        """Spawn the worker loop in a daemon thread."""

        if self._thread and self._thread.is_alive():
            logger.debug("Reprocess worker already running")
            return
        logger.info(
            "Starting reprocess worker poll_interval=%s batch_size=%s",
            self._poll_interval,
            self._batch_size,
        )
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="receipt-reprocess-worker", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if not self._thread:
            return
        logger.info("Stopping reprocess worker")
        self._stop_event.set()
        self._thread.join(timeout=self._poll_interval + 1)
        self._thread = None

    def poll_once(self) -> int:
        """Retry up to ``batch_size`` due extractions; returns the number that succeeded."""

        batch = self._take_due()
        succeeded = 0
        for entry in batch:
            entry.attempts += 1
            result = self._pipeline.extract_receipt(entry.request)
            extra = {"request_id": entry.request.request_id}
            if isinstance(result, ExtractionSuccess):
                try:
                    self._sink(entry.request, result)
                except Exception:
                    logger.exception("Reprocess sink failed", extra=extra)
                    continue
                succeeded += 1
                continue
            if result.reprocessable and entry.attempts < self._max_attempts:
                entry.not_before = self._due_after(result)
                with self._lock:
                    self._queue.append(entry)
                logger.debug(
                    "Re-queued receipt attempts=%s retry_after=%s",
                    entry.attempts,
                    result.retry_after,
                    extra=extra,
                )
            else:
                logger.warning(
                    "Giving up on receipt after %s attempt(s) code=%s",
                    entry.attempts,
                    result.code.value,
                    extra=extra,
                )
        return succeeded

    def _take_due(self) -> List[_QueuedExtraction]:
        now = self._clock()
        with self._lock:
            due: List[_QueuedExtraction] = []
            waiting: Deque[_QueuedExtraction] = deque()
            for entry in self._queue:
                if len(due) < self._batch_size and entry.not_before <= now:
                    due.append(entry)
                else:
                    waiting.append(entry)
            self._queue = waiting
        return due

    def _due_after(self, failure: ExtractionFailure) -> float:
        return self._clock() + (failure.retry_after or 0)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.poll_once()
            if self._stop_event.wait(self._poll_interval):
                break


__all__ = ["ReprocessWorker", "ResultSink"]
