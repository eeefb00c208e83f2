"""Chat history persistence so sessions outlive a process."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import delete, select

from heybills.models.chat import ConversationSession, Turn

from .models import ChatMessageRecord
from .repository import session_scope


def _to_storage(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_storage(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class SqlSessionStore:
    def load(self, session_id: str, user_id: str, *, limit: int) -> Optional[ConversationSession]:
        with session_scope() as session:
            rows = session.scalars(
                select(ChatMessageRecord)
                .where(ChatMessageRecord.user_id == user_id, ChatMessageRecord.session_id == session_id)
                .order_by(ChatMessageRecord.id.desc())
                .limit(limit)
            ).all()
            if not rows:
                return None
            rows = list(reversed(rows))
            turns = tuple(
                Turn(role=row.role, text=row.text, timestamp=_from_storage(row.created_at)) for row in rows
            )
            title = next((row.title for row in reversed(rows) if row.title), None)
        return ConversationSession(
            session_id=session_id,
            user_id=user_id,
            turns=turns,
            title=title,
            created_at=turns[0].timestamp,
            updated_at=turns[-1].timestamp,
        )

    def append(self, session: ConversationSession, turns: Sequence[Turn]) -> None:
        with session_scope() as db:
            db.add_all(
                ChatMessageRecord(
                    session_id=session.session_id,
                    user_id=session.user_id,
                    role=turn.role,
                    text=turn.text,
                    title=session.title,
                    created_at=_to_storage(turn.timestamp),
                )
                for turn in turns
            )

    def delete(self, session_id: str, user_id: str) -> None:
        with session_scope() as session:
            session.execute(
                delete(ChatMessageRecord).where(
                    ChatMessageRecord.user_id == user_id,
                    ChatMessageRecord.session_id == session_id,
                )
            )


__all__ = ["SqlSessionStore"]
