"""Pydantic models for receipt extraction requests and results."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Annotated, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from heybills.errors import ErrorCode, ErrorInfo

T = TypeVar("T")


class ExtractionRequest(BaseModel):
    """Image payload handed to a single extraction call."""

    request_id: str
    image: bytes = Field(repr=False)
    user_id: Optional[str] = None
    filename: Optional[str] = None
    content_type: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ExtractedField(BaseModel, Generic[T]):
    """A normalized value together with the recognition confidence it came from."""

    value: T
    confidence: Optional[float] = None
    source_line: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ReceiptLineItem(BaseModel):
    """Structured line item parsed from a receipt."""

    raw_text: str
    name: str
    quantity: Optional[float] = None
    unit: Optional[str] = None
    unit_price: Optional[float] = None
    total_price: Optional[float] = None
    confidence: Optional[float] = None

    model_config = ConfigDict(frozen=True)


class ReceiptFields(BaseModel):
    """Normalized view of a receipt; unparseable fields are ``None``."""

    merchant: Optional[ExtractedField[str]] = None
    purchase_date: Optional[ExtractedField[date]] = None
    total: Optional[ExtractedField[float]] = None
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    currency: Optional[str] = None
    category: Optional[str] = None
    items: List[ReceiptLineItem] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class ExtractionMetadata(BaseModel):
    image_hash: str
    processing_time_ms: int
    lines_processed: int
    engine_generation: Optional[int] = None
    image_size: Optional[tuple[int, int]] = None

    model_config = ConfigDict(frozen=True)


class ReviewRecommendation(BaseModel):
    """Guidance on whether extracted fields can be saved without review."""

    overall_confidence: float
    confidence_level: Literal["high", "medium", "low"]
    save_recommended: bool
    needs_review: bool
    low_confidence_fields: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class FallbackDescriptor(BaseModel):
    """Alternatives offered to the user when extraction is unavailable."""

    can_manual_entry: bool = True
    can_reprocess_later: bool = False
    supported_actions: List[str] = Field(default_factory=lambda: ["manual entry"])
    recommendation: Optional[str] = None

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class ExtractionSuccess(BaseModel):
    status: Literal["succeeded"] = "succeeded"
    request_id: str
    raw_text: str
    confidence: Optional[float] = None
    fields: ReceiptFields
    metadata: ExtractionMetadata
    review: ReviewRecommendation

    model_config = ConfigDict(frozen=True)


class ExtractionFailure(BaseModel):
    status: Literal["failed"] = "failed"
    request_id: str
    error: ErrorInfo
    retry_after: Optional[int] = None
    fallback: FallbackDescriptor
    detail: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def code(self) -> ErrorCode:
        return self.error.code

    @property
    def reprocessable(self) -> bool:
        return self.fallback.can_reprocess_later


ExtractionResult = Annotated[Union[ExtractionSuccess, ExtractionFailure], Field(discriminator="status")]


_PAYLOAD_ERRORS = {
    ErrorCode.EXTRACTION_INPUT_INVALID: "Invalid receipt image",
}


class DegradedModePayload(BaseModel):
    """Response body returned to clients when OCR cannot produce a result."""

    error: str
    message: str
    code: ErrorCode
    fallback: FallbackDescriptor
    retry_after: Optional[int] = None
    timestamp: datetime

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    @classmethod
    def from_failure(cls, failure: ExtractionFailure, *, now: datetime | None = None) -> "DegradedModePayload":
        return cls(
            error=_PAYLOAD_ERRORS.get(failure.code, "OCR service unavailable"),
            message=failure.error.user_message,
            code=failure.code,
            fallback=failure.fallback,
            retry_after=failure.retry_after,
            timestamp=now or datetime.now(timezone.utc),
        )


__all__ = [
    "ExtractionRequest",
    "ExtractedField",
    "ReceiptLineItem",
    "ReceiptFields",
    "ExtractionMetadata",
    "ReviewRecommendation",
    "FallbackDescriptor",
    "ExtractionSuccess",
    "ExtractionFailure",
    "ExtractionResult",
    "DegradedModePayload",
]
