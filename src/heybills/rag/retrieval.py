"""User-scoped vector retrieval over indexed receipt fragments."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional, Protocol

import numpy as np

from heybills import metrics
from heybills.errors import RetrievalScopeViolation
from heybills.models.chat import ContextFragment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FragmentCandidate:
    receipt_id: int
    user_id: str
    excerpt: str
    embedding: np.ndarray
    receipt_date: Optional[date] = None
    merchant: Optional[str] = None


class FragmentStore(Protocol):
    def candidates_for_user(self, user_id: str) -> Iterable[FragmentCandidate]:
        ...


def _recency_key(value: Optional[date]) -> int:
    # Undated receipts sort after dated ones on equal score.
    return -value.toordinal() if value is not None else 1


class VectorRetrievalEngine:
    """Rank a user's stored fragments against a query embedding.

    Ownership is checked here as well as in the store query: a candidate owned by anyone other
    than ``user_scope`` aborts the call with ``RetrievalScopeViolation`` instead of being
    filtered out quietly.
    """

    def __init__(self, store: FragmentStore, *, min_similarity: float = 0.3, default_k: int = 5) -> None:
        self._store = store
        self._min_similarity = min_similarity
        self._default_k = default_k

    def retrieve(
        self,
        query_embedding: np.ndarray,
        k: Optional[int] = None,
        *,
        user_scope: str,
    ) -> List[ContextFragment]:
        limit = self._default_k if k is None else k
        if limit <= 0:
            return []

        candidates = list(self._store.candidates_for_user(user_scope))
        self._verify_scope(candidates, user_scope)

        query = np.asarray(query_embedding, dtype=np.float32).ravel()
        query_norm = float(np.linalg.norm(query))
        if not candidates or query_norm == 0.0:
            metrics.RETRIEVAL_FRAGMENTS.observe(0)
            return []

        usable = [c for c in candidates if np.asarray(c.embedding).shape == query.shape]
        if len(usable) != len(candidates):
            logger.warning(
                "Skipped %s fragment(s) with mismatched embedding dimensions",
                len(candidates) - len(usable),
                extra={"user_id": user_scope},
            )
        if not usable:
            metrics.RETRIEVAL_FRAGMENTS.observe(0)
            return []

        matrix = np.stack([np.asarray(c.embedding, dtype=np.float32) for c in usable])
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        scores = (matrix @ query) / (norms * query_norm)

        ranked = sorted(
            (
                (float(score), candidate)
                for score, candidate in zip(scores, usable)
                if score >= self._min_similarity
            ),
            key=lambda pair: (-pair[0], _recency_key(pair[1].receipt_date), pair[1].receipt_id),
        )
        fragments = [
            ContextFragment(
                receipt_id=candidate.receipt_id,
                excerpt=candidate.excerpt,
                score=round(score, 6),
                receipt_date=candidate.receipt_date,
                merchant=candidate.merchant,
            )
            for score, candidate in ranked[:limit]
        ]
        metrics.RETRIEVAL_FRAGMENTS.observe(len(fragments))
        return fragments

    @staticmethod
    def _verify_scope(candidates: Iterable[FragmentCandidate], user_scope: str) -> None:
        foreign = [candidate for candidate in candidates if candidate.user_id != user_scope]
        if not foreign:
            return
        metrics.RETRIEVAL_SCOPE_VIOLATIONS.inc(len(foreign))
        logger.critical(
            "Retrieval returned %s fragment(s) owned by another user; receipt_ids=%s",
            len(foreign),
            [candidate.receipt_id for candidate in foreign],
            extra={"user_id": user_scope},
        )
        raise RetrievalScopeViolation("Retrieval results crossed a user ownership boundary")


__all__ = ["FragmentCandidate", "FragmentStore", "VectorRetrievalEngine"]
