"""Tests for the embedding capabilities."""

from __future__ import annotations

import httpx
import numpy as np
import pytest

from heybills.config import Settings
from heybills.models.receipt import ExtractionRequest
from heybills.rag.embeddings import HashingEmbedder, HttpEmbedder, build_embedder
from heybills.rag.indexing import index_extraction, receipt_document_text
from tests.helpers import png_bytes


def _mock_client(monkeypatch, handler) -> list:
    seen = []
    real_client = httpx.Client

    def _client(**kwargs):
        def _recording(request):
            seen.append(request)
            return handler(request)

        return real_client(transport=httpx.MockTransport(_recording), **kwargs)

    monkeypatch.setattr(httpx, "Client", _client)
    return seen


def test_hashing_embedder_is_deterministic_and_normalized():
    embedder = HashingEmbedder(32)

    first = embedder.embed("Corner Coffee latte")
    second = embedder.embed("corner coffee LATTE")

    assert first.shape == (32,)
    assert np.allclose(first, second)
    assert np.isclose(np.linalg.norm(first), 1.0)
    assert not HashingEmbedder(32).embed("   ").any()


def test_http_embedder_posts_to_embeddings_endpoint(monkeypatch):
    seen = _mock_client(monkeypatch, lambda request: httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2]}]}))
    embedder = HttpEmbedder(base_url="https://llm.example/v1", model="tiny", dim=2, api_key="secret")

    vector = embedder.embed("hello")

    assert vector.tolist() == pytest.approx([0.1, 0.2])
    assert str(seen[0].url) == "https://llm.example/v1/embeddings"
    assert seen[0].headers["Authorization"] == "Bearer secret"


def test_http_embedder_rejects_wrong_dimension(monkeypatch):
    _mock_client(monkeypatch, lambda request: httpx.Response(200, json={"data": [{"embedding": [0.1]}]}))
    embedder = HttpEmbedder(base_url="https://llm.example/v1", model="tiny", dim=2)

    with pytest.raises(ValueError):
        embedder.embed("hello")


def test_build_embedder_defaults_to_hashing():
    assert isinstance(build_embedder(Settings(embedding_dim=16)), HashingEmbedder)
    assert isinstance(build_embedder(Settings(embedding_base_url="https://llm.example/v1")), HttpEmbedder)


def test_index_extraction_hands_document_and_vector_to_writer(services):
    result = services.pipeline.extract_receipt(ExtractionRequest(request_id="r1", image=png_bytes()))
    written = []

    def _writer(user_id, extraction, document, embedding):
        written.append((user_id, document, embedding.shape))
        return 41

    receipt_id = index_extraction(result, "alice", HashingEmbedder(16), _writer)

    assert receipt_id == 41
    assert written[0][0] == "alice"
    assert written[0][1] == receipt_document_text(result.fields)
    assert "Corner Coffee" in written[0][1]
    assert written[0][2] == (16,)
