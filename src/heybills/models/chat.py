"""Pydantic models for the retrieval-augmented chat flow."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Turn(BaseModel):
    """A single message in a conversation."""

    role: Literal["user", "assistant"]
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class ConversationSession(BaseModel):
    """Immutable snapshot of a bounded, chronologically ordered conversation."""

    session_id: str
    user_id: str
    turns: Tuple[Turn, ...] = ()
    title: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    def with_turn(self, turn: Turn) -> "ConversationSession":
        """Return a copy with ``turn`` appended, leaving this snapshot untouched."""

        return self.model_copy(update={"turns": self.turns + (turn,), "updated_at": turn.timestamp})

    @property
    def latest_user_turn(self) -> Optional[Turn]:
        for turn in reversed(self.turns):
            if turn.role == "user":
                return turn
        return None


class RetrievalQuery(BaseModel):
    session_id: str
    user_id: str
    text: str
    summary: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def embedding_text(self) -> str:
        if self.summary:
            return f"{self.text}\n\nEarlier in the conversation: {self.summary}"
        return self.text


class ContextFragment(BaseModel):
    """A retrieved receipt excerpt used as chat context."""

    receipt_id: int
    excerpt: str
    score: float
    receipt_date: Optional[date] = None
    merchant: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class GenerationRequest(BaseModel):
    """A bounded prompt ready to hand to the generation capability."""

    system_prompt: str
    history: Tuple[Turn, ...] = ()
    fragments: Tuple[ContextFragment, ...] = ()
    user_turn: Turn
    timeout: float
    budget_chars: int
    size_chars: int
    dropped_turns: int = 0
    dropped_fragments: int = 0

    model_config = ConfigDict(frozen=True)

    def to_messages(self) -> List[Dict[str, str]]:
        from heybills.chat.prompt import render_context

        messages = [{"role": "system", "content": self.system_prompt}]
        if self.fragments:
            messages.append({"role": "system", "content": render_context(self.fragments)})
        messages.extend({"role": turn.role, "content": turn.text} for turn in self.history)
        messages.append({"role": "user", "content": self.user_turn.text})
        return messages


class ReplyMetadata(BaseModel):
    context_used: int = 0
    processing_time_ms: int = 0
    dropped_turns: int = 0
    dropped_fragments: int = 0
    sources: List[int] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class ChatReply(BaseModel):
    session_id: str
    reply: str
    used_fragments: List[ContextFragment] = Field(default_factory=list)
    metadata: ReplyMetadata = Field(default_factory=ReplyMetadata)

    model_config = ConfigDict(frozen=True)


__all__ = [
    "Turn",
    "ConversationSession",
    "RetrievalQuery",
    "ContextFragment",
    "GenerationRequest",
    "ReplyMetadata",
    "ChatReply",
]
