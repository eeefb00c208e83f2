"""Chat entry point composing context, retrieval and synthesis."""

from __future__ import annotations

import logging
import time
from typing import List

from heybills.chat.context import ConversationContextManager
from heybills.chat.synthesizer import ResponseSynthesizer
from heybills.errors import RetrievalScopeViolation
from heybills.models.chat import ChatReply, ContextFragment, ConversationSession, RetrievalQuery, Turn
from heybills.rag.embeddings import Embedder
from heybills.rag.retrieval import VectorRetrievalEngine

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(
        self,
        contexts: ConversationContextManager,
        embedder: Embedder,
        retrieval: VectorRetrievalEngine,
        synthesizer: ResponseSynthesizer,
        *,
        top_k: int = 5,
        max_message_chars: int = 2000,
    ) -> None:
        self._contexts = contexts
        self._embedder = embedder
        self._retrieval = retrieval
        self._synthesizer = synthesizer
        self._top_k = top_k
        self._max_message_chars = max_message_chars

    @property
    def contexts(self) -> ConversationContextManager:
        return self._contexts

    def chat(self, session_id: str, user_id: str, message: str) -> ChatReply:
        """Answer ``message`` using the user's own receipts as context."""

        started = time.monotonic()
        text = (message or "").strip()
        if not text:
            raise ValueError("Message must not be empty")
        if len(text) > self._max_message_chars:
            raise ValueError(f"Message exceeds {self._max_message_chars} characters")

        session = self._contexts.get_session(session_id, user_id)
        user_turn = Turn(role="user", text=text)
        query = self._contexts.build_query(session.with_turn(user_turn))
        fragments = self._retrieve(query)
        logger.debug(
            "Retrieved %s fragment(s) for chat",
            len(fragments),
            extra={"session_id": session_id, "user_id": user_id},
        )
        return self._synthesizer.synthesize(session, user_turn, fragments, started_at=started)

    def history(self, session_id: str, user_id: str) -> ConversationSession:
        return self._contexts.get_session(session_id, user_id)

    def end_session(self, session_id: str, user_id: str) -> bool:
        return self._contexts.expire(session_id, user_id)

    def close(self) -> None:
        self._synthesizer.close()

    def _retrieve(self, query: RetrievalQuery) -> List[ContextFragment]:
        try:
            embedding = self._embedder.embed(query.embedding_text)
            return self._retrieval.retrieve(embedding, self._top_k, user_scope=query.user_id)
        except RetrievalScopeViolation:
            raise
        except Exception:
            # "No context" is a normal outcome; the assistant still answers.
            logger.exception(
                "Context retrieval failed; answering without receipt context",
                extra={"session_id": query.session_id, "user_id": query.user_id},
            )
            return []


__all__ = ["ChatService"]
