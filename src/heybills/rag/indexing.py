"""Build the searchable text and embedding for extracted receipts."""

from __future__ import annotations

import logging
from typing import Callable, List

import numpy as np

from heybills.models.receipt import ExtractionSuccess, ReceiptFields
from heybills.rag.embeddings import Embedder

logger = logging.getLogger(__name__)

ReceiptWriter = Callable[[str, ExtractionSuccess, str, np.ndarray], int]


def receipt_document_text(fields: ReceiptFields, *, max_items: int = 20) -> str:
    """Render the fields that chat retrieval should match against."""

    parts: List[str] = []
    if fields.merchant:
        parts.append(f"Merchant: {fields.merchant.value}")
    if fields.category:
        parts.append(f"Category: {fields.category}")
    if fields.total:
        currency = f" {fields.currency}" if fields.currency else ""
        parts.append(f"Total: {fields.total.value:.2f}{currency}")
    if fields.purchase_date:
        parts.append(f"Date: {fields.purchase_date.value.isoformat()}")
    names = [item.name for item in fields.items[:max_items] if item.name]
    if names:
        parts.append("Items: " + ", ".join(names))
    return "\n".join(parts)


def index_extraction(
    result: ExtractionSuccess,
    user_id: str,
    embedder: Embedder,
    writer: ReceiptWriter,
) -> int:
    """Embed a successful extraction and hand it to ``writer``; returns the stored receipt id."""

    document = receipt_document_text(result.fields)
    if not document:
        # Nothing structured was found; fall back to the recognized text itself.
        document = result.raw_text[:1000]
    embedding = embedder.embed(document)
    receipt_id = writer(user_id, result, document, embedding)
    logger.info("Indexed receipt receipt_id=%s", receipt_id, extra={"user_id": user_id})
    return receipt_id


__all__ = ["ReceiptWriter", "index_extraction", "receipt_document_text"]
