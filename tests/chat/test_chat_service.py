"""Tests for the chat entry point."""

from __future__ import annotations

from datetime import date

import pytest

from heybills.chat.context import ConversationContextManager
from heybills.chat.prompt import PromptAssembler
from heybills.chat.service import ChatService
from heybills.chat.synthesizer import ResponseSynthesizer
from heybills.errors import RetrievalScopeViolation
from heybills.rag.embeddings import HashingEmbedder
from heybills.rag.retrieval import FragmentCandidate, VectorRetrievalEngine
from tests.helpers import ScriptedGenerator

EMBEDDER = HashingEmbedder(512)


class StaticStore:
    def __init__(self, candidates=(), error: Exception | None = None) -> None:
        self.candidates = list(candidates)
        self.error = error
        self.requested = []

    def candidates_for_user(self, user_id):
        self.requested.append(user_id)
        if self.error is not None:
            raise self.error
        return self.candidates


def _candidate(receipt_id: int, user_id: str, text: str) -> FragmentCandidate:
    return FragmentCandidate(
        receipt_id=receipt_id,
        user_id=user_id,
        excerpt=text,
        embedding=EMBEDDER.embed(text),
        receipt_date=date(2024, 3, 15),
        merchant=text.split()[1] if len(text.split()) > 1 else None,
    )


@pytest.fixture()
def generator() -> ScriptedGenerator:
    return ScriptedGenerator(reply="You spent $8.37 at Corner Coffee.")


def _service(store, generator) -> ChatService:
    contexts = ConversationContextManager()
    synthesizer = ResponseSynthesizer(generator, contexts, PromptAssembler(), timeout=5)
    retrieval = VectorRetrievalEngine(store, min_similarity=0.1)
    return ChatService(contexts, EMBEDDER, retrieval, synthesizer, top_k=3, max_message_chars=200)


def test_chat_answers_from_own_receipts(generator):
    store = StaticStore([_candidate(1, "alice", "Merchant: Corner Coffee Items: latte bagel")])
    service = _service(store, generator)

    try:
        reply = service.chat("s1", "alice", "How much did I spend at Corner Coffee?")
    finally:
        service.close()

    assert reply.reply == "You spent $8.37 at Corner Coffee."
    assert reply.metadata.sources == [1]
    assert store.requested == ["alice"]
    context_message = generator.messages[0][1]
    assert context_message["role"] == "system"
    assert "Corner Coffee" in context_message["content"]
    assert len(service.history("s1", "alice").turns) == 2


def test_foreign_fragment_aborts_the_request(generator):
    store = StaticStore([_candidate(9, "mallory", "Merchant: Corner Coffee")])
    service = _service(store, generator)

    try:
        with pytest.raises(RetrievalScopeViolation):
            service.chat("s1", "alice", "Corner Coffee spend?")
    finally:
        service.close()

    assert generator.messages == []
    assert service.history("s1", "alice").turns == ()


def test_retrieval_errors_degrade_to_no_context(generator):
    service = _service(StaticStore(error=RuntimeError("database is locked")), generator)

    try:
        reply = service.chat("s1", "alice", "Anything from March?")
    finally:
        service.close()

    assert reply.metadata.context_used == 0
    assert [message["role"] for message in generator.messages[0]] == ["system", "user"]


@pytest.mark.parametrize("message", ["", "   ", "x" * 201])
def test_invalid_messages_are_rejected(generator, message):
    service = _service(StaticStore(), generator)

    try:
        with pytest.raises(ValueError):
            service.chat("s1", "alice", message)
    finally:
        service.close()

    assert generator.messages == []


def test_end_session_forgets_history(generator):
    service = _service(StaticStore(), generator)
    try:
        service.chat("s1", "alice", "hello")
        assert service.end_session("s1", "alice") is True
    finally:
        service.close()

    assert service.history("s1", "alice").turns == ()
