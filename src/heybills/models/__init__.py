"""Pydantic models defining shared data contracts."""

from heybills.models.chat import (
    ChatReply,
    ContextFragment,
    ConversationSession,
    GenerationRequest,
    ReplyMetadata,
    RetrievalQuery,
    Turn,
)
from heybills.models.engine import EngineStatus
from heybills.models.receipt import (
    DegradedModePayload,
    ExtractedField,
    ExtractionFailure,
    ExtractionMetadata,
    ExtractionRequest,
    ExtractionResult,
    ExtractionSuccess,
    FallbackDescriptor,
    ReceiptFields,
    ReceiptLineItem,
    ReviewRecommendation,
)

__all__ = [
    "ChatReply",
    "ContextFragment",
    "ConversationSession",
    "GenerationRequest",
    "ReplyMetadata",
    "RetrievalQuery",
    "Turn",
    "EngineStatus",
    "DegradedModePayload",
    "ExtractedField",
    "ExtractionFailure",
    "ExtractionMetadata",
    "ExtractionRequest",
    "ExtractionResult",
    "ExtractionSuccess",
    "FallbackDescriptor",
    "ReceiptFields",
    "ReceiptLineItem",
    "ReviewRecommendation",
]
