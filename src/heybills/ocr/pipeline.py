"""Receipt extraction pipeline driven by the managed OCR engine."""

from __future__ import annotations

import hashlib
import io
import logging
import time
from typing import List, Optional

from PIL import Image

from heybills import metrics
from heybills.errors import (
    EngineUnavailable,
    ErrorCode,
    ErrorInfo,
    HeyBillsError,
    classify,
    describe,
)
from heybills.models.receipt import (
    ExtractionFailure,
    ExtractionMetadata,
    ExtractionRequest,
    ExtractionResult,
    ExtractionSuccess,
    FallbackDescriptor,
    ReceiptFields,
    ReviewRecommendation,
)
from heybills.ocr.lifecycle import EngineLifecycleManager
from heybills.ocr.parser import ReceiptParser
from heybills.ocr.sanitize import sanitize_recognition

logger = logging.getLogger(__name__)

SAVE_RECOMMENDED_CONFIDENCE = 0.75
NEEDS_REVIEW_CONFIDENCE = 0.6
HIGH_CONFIDENCE = 0.9


def build_fallback(info: ErrorInfo) -> FallbackDescriptor:
    """Describe what the user can do instead of automatic extraction."""

    if info.code is ErrorCode.EXTRACTION_INPUT_INVALID:
        return FallbackDescriptor(
            can_manual_entry=True,
            can_reprocess_later=False,
            supported_actions=["manual entry", "upload a clearer image"],
            recommendation="Retake the photo in good light with the whole receipt in frame, or enter it manually.",
        )
    if info.code is ErrorCode.OCR_SYSTEM_INCOMPATIBLE:
        return FallbackDescriptor(
            can_manual_entry=True,
            can_reprocess_later=False,
            supported_actions=["manual entry"],
            recommendation="Use manual entry for now. OCR functionality may work in different environments.",
        )
    return FallbackDescriptor(
        can_manual_entry=info.manual_entry,
        can_reprocess_later=info.retryable,
        supported_actions=["manual entry", "reprocess when service available"],
        recommendation="Use manual entry now or keep the receipt to reprocess once scanning is back.",
    )


def image_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class ExtractionPipeline:
    """Turn receipt images into structured results without ever raising for OCR causes."""

    def __init__(
        self,
        lifecycle: EngineLifecycleManager,
        parser: Optional[ReceiptParser] = None,
        *,
        confidence_threshold: float = NEEDS_REVIEW_CONFIDENCE,
    ) -> None:
        self._lifecycle = lifecycle
        self._parser = parser or ReceiptParser()
        self._confidence_threshold = confidence_threshold

    @property
    def lifecycle(self) -> EngineLifecycleManager:
        return self._lifecycle

    def extract_receipt(self, request: ExtractionRequest) -> ExtractionResult:
        started = time.monotonic()
        log_extra = {"request_id": request.request_id}

        try:
            image = self._decode(request.image)
        except Exception as exc:
            logger.info("Rejected undecodable receipt image: %s", exc, extra=log_extra)
            return self._failure(request, describe(ErrorCode.EXTRACTION_INPUT_INVALID), detail=str(exc))

        try:
            handle = self._lifecycle.acquire()
        except EngineUnavailable as exc:
            logger.warning("OCR unavailable code=%s: %s", exc.code.value, exc, extra=log_extra)
            return self._failure(request, exc.info, retry_after=exc.retry_after, detail=str(exc))

        try:
            recognition = handle.engine.recognize(image)
        except Exception as exc:
            info = classify(exc)
            if info.code is ErrorCode.EXTRACTION_INPUT_INVALID:
                logger.info("Engine rejected receipt image: %s", exc, extra=log_extra)
                return self._failure(request, info, detail=str(exc))
            if isinstance(exc, TimeoutError) or isinstance(exc, HeyBillsError):
                logger.warning("OCR recognition did not complete: %s", exc, extra=log_extra)
                return self._failure(request, info, retry_after=info.default_retry_after, detail=str(exc))
            self._lifecycle.mark_failed(handle, exc)
            logger.exception("OCR engine fault during recognition", extra=log_extra)
            return self._failure(request, info, retry_after=info.default_retry_after, detail=str(exc))

        recognition = sanitize_recognition(recognition)
        if not recognition.text.strip():
            return self._failure(
                request,
                describe(ErrorCode.EXTRACTION_INPUT_INVALID),
                detail="No text found in image",
            )

        fields = self._parser.parse(recognition)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        result = ExtractionSuccess(
            request_id=request.request_id,
            raw_text=recognition.text,
            confidence=recognition.confidence,
            fields=fields,
            metadata=ExtractionMetadata(
                image_hash=image_hash(request.image),
                processing_time_ms=elapsed_ms,
                lines_processed=len(recognition.lines) or len(recognition.text.splitlines()),
                engine_generation=handle.generation,
                image_size=image.size,
            ),
            review=self._review(recognition.confidence, fields),
        )
        metrics.OCR_EXTRACTIONS.labels(outcome="succeeded").inc()
        logger.info(
            "Extracted receipt merchant=%s total=%s in %sms",
            fields.merchant.value if fields.merchant else None,
            fields.total.value if fields.total else None,
            elapsed_ms,
            extra=log_extra,
        )
        return result

    @staticmethod
    def _decode(payload: bytes) -> Image.Image:
        if not payload:
            raise ValueError("Empty image payload")
        with Image.open(io.BytesIO(payload)) as decoded:
            decoded.verify()
        # verify() leaves the image unusable, so decode again for recognition.
        image = Image.open(io.BytesIO(payload))
        image.load()
        return image

    def _review(self, page_confidence: Optional[float], fields: ReceiptFields) -> ReviewRecommendation:
        low_fields: List[str] = []
        scores: List[float] = []
        for name in ("merchant", "purchase_date", "total"):
            field = getattr(fields, name)
            if field is None:
                low_fields.append(name)
                scores.append(0.0)
                continue
            confidence = field.confidence if field.confidence is not None else page_confidence
            scores.append(confidence or 0.0)
            if confidence is None or confidence < self._confidence_threshold:
                low_fields.append(name)

        overall = sum(scores) / len(scores)
        if page_confidence is not None:
            overall = (overall + page_confidence) / 2
        if overall >= HIGH_CONFIDENCE:
            level = "high"
        elif overall >= SAVE_RECOMMENDED_CONFIDENCE:
            level = "medium"
        else:
            level = "low"
        return ReviewRecommendation(
            overall_confidence=round(overall, 4),
            confidence_level=level,
            save_recommended=overall >= SAVE_RECOMMENDED_CONFIDENCE,
            needs_review=overall < NEEDS_REVIEW_CONFIDENCE or bool(low_fields),
            low_confidence_fields=low_fields,
        )

    @staticmethod
    def _failure(
        request: ExtractionRequest,
        info: ErrorInfo,
        *,
        retry_after: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> ExtractionFailure:
        metrics.OCR_EXTRACTIONS.labels(outcome=info.code.value).inc()
        return ExtractionFailure(
            request_id=request.request_id,
            error=info,
            retry_after=retry_after if retry_after is not None else info.default_retry_after,
            fallback=build_fallback(info),
            detail=detail,
        )


__all__ = ["ExtractionPipeline", "build_fallback", "image_hash"]
