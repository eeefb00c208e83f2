"""Tests for the receipt extraction pipeline."""

from __future__ import annotations

import hashlib
import threading
import time
from datetime import datetime, timezone

from heybills.errors import ErrorCode
from heybills.models.receipt import (
    DegradedModePayload,
    ExtractionFailure,
    ExtractionRequest,
    ExtractionSuccess,
)
from heybills.ocr.engine import Recognition
from heybills.ocr.lifecycle import EngineLifecycleManager, EngineState
from heybills.ocr.pipeline import ExtractionPipeline
from tests.helpers import CountingFactory, FakeEngine, make_recognition, png_bytes


def _request(payload: bytes, request_id: str = "req-1") -> ExtractionRequest:
    return ExtractionRequest(request_id=request_id, image=payload)


def _pipeline(factory) -> ExtractionPipeline:
    return ExtractionPipeline(EngineLifecycleManager(factory, init_timeout=5))


def _failing(message: str):
    def _build():
        raise RuntimeError(message)

    return _build


def test_extract_receipt_success_masks_card_numbers():
    payload = png_bytes()
    pipeline = _pipeline(CountingFactory())

    result = pipeline.extract_receipt(_request(payload))

    assert isinstance(result, ExtractionSuccess)
    assert "4111********1111" in result.raw_text
    assert "4111 1111 1111 1111" not in result.raw_text
    assert result.fields.merchant.value == "Corner Coffee"
    assert result.fields.total.value == 8.37
    assert result.metadata.image_hash == hashlib.sha256(payload).hexdigest()
    assert result.metadata.engine_generation == 1
    assert result.metadata.lines_processed == 9
    assert result.metadata.image_size == (32, 32)
    assert result.review.confidence_level == "high"
    assert result.review.save_recommended is True
    assert result.review.needs_review is False


def test_low_confidence_fields_need_review():
    lines = [("Corner Coffee", 0.4), ("03/15/2024", 0.5), ("Total 8.37", 0.45)]
    factory = CountingFactory(lambda: FakeEngine(make_recognition(lines)))

    result = _pipeline(factory).extract_receipt(_request(png_bytes()))

    assert isinstance(result, ExtractionSuccess)
    assert result.review.needs_review is True
    assert result.review.save_recommended is False
    assert result.review.confidence_level == "low"
    assert set(result.review.low_confidence_fields) == {"merchant", "purchase_date", "total"}


def test_undecodable_image_fails_without_touching_engine():
    factory = CountingFactory()

    result = _pipeline(factory).extract_receipt(_request(b"definitely not an image"))

    assert isinstance(result, ExtractionFailure)
    assert result.code is ErrorCode.EXTRACTION_INPUT_INVALID
    assert result.retry_after is None
    assert result.fallback.can_manual_entry is True
    assert result.reprocessable is False
    assert factory.calls == 0


def test_engine_init_failure_is_reprocessable():
    result = _pipeline(CountingFactory(_failing("boom"))).extract_receipt(_request(png_bytes()))

    assert isinstance(result, ExtractionFailure)
    assert result.code is ErrorCode.OCR_INIT_FAILED
    assert result.retry_after == 300
    assert result.reprocessable is True
    assert "reprocess when service available" in result.fallback.supported_actions


def test_incompatible_runtime_recommends_manual_entry():
    factory = CountingFactory(_failing("SetVariable: unable to set tessedit_pageseg_mode"))

    result = _pipeline(factory).extract_receipt(_request(png_bytes()))

    assert result.code is ErrorCode.OCR_SYSTEM_INCOMPATIBLE
    assert result.retry_after == 1800
    assert result.reprocessable is False
    assert result.fallback.supported_actions == ["manual entry"]
    assert "manual entry" in result.fallback.recommendation.lower()


def test_cold_start_burst_constructs_engine_once():
    release = threading.Event()

    def _slow_build():
        release.wait(5)
        return FakeEngine()

    factory = CountingFactory(_slow_build)
    pipeline = _pipeline(factory)
    payload = png_bytes()
    results = []

    def _caller(index: int) -> None:
        results.append(pipeline.extract_receipt(_request(payload, f"req-{index}")))

    threads = [threading.Thread(target=_caller, args=(index,)) for index in range(10)]
    for thread in threads:
        thread.start()
    time.sleep(0.05)
    release.set()
    for thread in threads:
        thread.join(10)

    assert factory.calls == 1
    assert len(results) == 10
    assert all(isinstance(result, ExtractionSuccess) for result in results)


def test_recognition_timeout_keeps_engine_ready():
    factory = CountingFactory(lambda: FakeEngine(error=TimeoutError("recognition timed out")))
    pipeline = _pipeline(factory)

    result = pipeline.extract_receipt(_request(png_bytes()))

    assert result.code is ErrorCode.OCR_SERVICE_UNAVAILABLE
    assert result.retry_after == 5
    assert pipeline.lifecycle.state is EngineState.READY


def test_engine_crash_marks_engine_failed():
    factory = CountingFactory(lambda: FakeEngine(error=RuntimeError("engine crashed")))
    pipeline = _pipeline(factory)

    result = pipeline.extract_receipt(_request(png_bytes()))

    assert result.code is ErrorCode.OCR_SERVICE_UNAVAILABLE
    assert pipeline.lifecycle.state is EngineState.FAILED
    assert pipeline.lifecycle.status().last_error_code is ErrorCode.OCR_SERVICE_UNAVAILABLE


def test_image_without_text_is_input_invalid():
    factory = CountingFactory(lambda: FakeEngine(Recognition(text="  \n ", confidence=None)))

    result = _pipeline(factory).extract_receipt(_request(png_bytes()))

    assert result.code is ErrorCode.EXTRACTION_INPUT_INVALID
    assert result.detail == "No text found in image"


def test_degraded_payload_uses_client_field_names():
    failure = _pipeline(CountingFactory(_failing("boom"))).extract_receipt(_request(png_bytes()))
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    payload = DegradedModePayload.from_failure(failure, now=now).model_dump(mode="json", by_alias=True)

    assert payload["error"] == "OCR service unavailable"
    assert payload["code"] == "OCR_INIT_FAILED"
    assert payload["retryAfter"] == 300
    assert payload["fallback"]["canManualEntry"] is True
    assert payload["fallback"]["canReprocessLater"] is True
    assert payload["timestamp"].startswith("2025-01-01")
