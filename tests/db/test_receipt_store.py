"""Tests for receipt persistence and the SQL fragment store."""

from __future__ import annotations

from datetime import date

import numpy as np
import pytest

from heybills.db.receipts import SqlFragmentStore, find_receipt_by_image_hash, save_extraction
from heybills.models.receipt import ExtractionRequest, ExtractionSuccess
from heybills.rag.embeddings import HashingEmbedder
from heybills.rag.indexing import receipt_document_text
from heybills.rag.retrieval import VectorRetrievalEngine
from tests.helpers import count_receipts, png_bytes


@pytest.fixture()
def extraction(services) -> ExtractionSuccess:
    result = services.pipeline.extract_receipt(ExtractionRequest(request_id="r1", image=png_bytes()))
    assert isinstance(result, ExtractionSuccess)
    return result


def test_save_and_count_are_scoped_per_user(extraction):
    embedder = HashingEmbedder(16)
    document = receipt_document_text(extraction.fields)
    first = save_extraction("alice", extraction, document, embedder.embed(document))
    second = save_extraction("alice", extraction, document)
    save_extraction("bob", extraction, document)

    assert second > first
    assert count_receipts("alice") == 2
    assert count_receipts("bob") == 1
    assert count_receipts("carol") == 0


def test_duplicate_lookup_uses_owner_and_hash(extraction):
    receipt_id = save_extraction("alice", extraction, "doc")

    assert find_receipt_by_image_hash("alice", extraction.metadata.image_hash) == receipt_id
    assert find_receipt_by_image_hash("bob", extraction.metadata.image_hash) is None
    assert find_receipt_by_image_hash("alice", "0" * 64) is None


def test_fragment_store_returns_only_owned_embedded_receipts(extraction):
    embedder = HashingEmbedder(16)
    document = receipt_document_text(extraction.fields)
    own = save_extraction("alice", extraction, document, embedder.embed(document))
    save_extraction("alice", extraction, document)
    save_extraction("bob", extraction, document, embedder.embed(document))

    candidates = list(SqlFragmentStore().candidates_for_user("alice"))

    assert [candidate.receipt_id for candidate in candidates] == [own]
    candidate = candidates[0]
    assert candidate.user_id == "alice"
    assert candidate.merchant == "Corner Coffee"
    assert candidate.receipt_date == date(2024, 3, 15)
    assert candidate.excerpt == document
    assert np.allclose(candidate.embedding, embedder.embed(document))


def test_stored_receipts_are_retrievable(extraction):
    embedder = HashingEmbedder(64)
    document = receipt_document_text(extraction.fields)
    receipt_id = save_extraction("alice", extraction, document, embedder.embed(document))

    fragments = VectorRetrievalEngine(SqlFragmentStore()).retrieve(embedder.embed(document), user_scope="alice")

    assert [fragment.receipt_id for fragment in fragments] == [receipt_id]
    assert fragments[0].score == pytest.approx(1.0, abs=1e-5)
