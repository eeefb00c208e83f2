"""Receipt persistence and the user-scoped fragment store used by chat retrieval."""

from __future__ import annotations

import json
import logging
from typing import Iterable, List, Optional

import numpy as np
from sqlalchemy import select

from heybills.models.receipt import ExtractionSuccess
from heybills.rag.retrieval import FragmentCandidate

from .models import ReceiptRecord
from .repository import session_scope

logger = logging.getLogger(__name__)


def save_extraction(
    user_id: str,
    result: ExtractionSuccess,
    document: str,
    embedding: Optional[np.ndarray] = None,
) -> int:
    """Persist a successful extraction for ``user_id`` and return the receipt id."""

    fields = result.fields
    with session_scope() as session:
        record = ReceiptRecord(
            user_id=user_id,
            request_id=result.request_id,
            merchant=fields.merchant.value if fields.merchant else None,
            purchase_date=fields.purchase_date.value if fields.purchase_date else None,
            total=fields.total.value if fields.total else None,
            currency=fields.currency,
            category=fields.category,
            confidence=result.review.overall_confidence,
            raw_text=result.raw_text,
            document=document,
            fields_json=fields.model_dump_json(),
            embedding_json=json.dumps([float(value) for value in embedding]) if embedding is not None else None,
            image_hash=result.metadata.image_hash,
        )
        session.add(record)
        session.flush()
        return record.id


def find_receipt_by_image_hash(user_id: str, image_hash: str) -> Optional[int]:
    """Return the id of a receipt this user already stored for the same image, if any."""

    with session_scope() as session:
        return session.scalar(
            select(ReceiptRecord.id)
            .where(ReceiptRecord.user_id == user_id, ReceiptRecord.image_hash == image_hash)
            .limit(1)
        )


class SqlFragmentStore:
    """Fragment store reading indexed receipts for a single owner."""

    def candidates_for_user(self, user_id: str) -> Iterable[FragmentCandidate]:
        with session_scope() as session:
            rows = session.scalars(
                select(ReceiptRecord).where(
                    ReceiptRecord.user_id == user_id,
                    ReceiptRecord.embedding_json.is_not(None),
                )
            ).all()
            candidates: List[FragmentCandidate] = []
            for row in rows:
                try:
                    embedding = np.asarray(json.loads(row.embedding_json or "[]"), dtype=np.float32)
                except json.JSONDecodeError:
                    logger.warning("Skipping receipt %s with unreadable embedding", row.id)
                    continue
                candidates.append(
                    FragmentCandidate(
                        receipt_id=row.id,
                        user_id=row.user_id,
                        excerpt=row.document or row.raw_text[:500],
                        embedding=embedding,
                        receipt_date=row.purchase_date,
                        merchant=row.merchant,
                    )
                )
        return candidates


__all__ = ["SqlFragmentStore", "find_receipt_by_image_hash", "save_extraction"]
