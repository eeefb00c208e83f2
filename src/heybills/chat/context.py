"""Bounded per-session conversation history."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Protocol, Sequence, Tuple

from heybills.models.chat import ConversationSession, RetrievalQuery, Turn

logger = logging.getLogger(__name__)

Summarizer = Callable[[Sequence[Turn]], Optional[str]]

TITLE_WORDS = 6
TITLE_ELLIPSIS_AFTER = 30


class SessionStore(Protocol):
    def load(self, session_id: str, user_id: str, *, limit: int) -> Optional[ConversationSession]:
        ...

    def append(self, session: ConversationSession, turns: Sequence[Turn]) -> None:
        ...

    def delete(self, session_id: str, user_id: str) -> None:
        ...


def derive_title(message: str) -> str:
    """First few words of the opening message, marked when the message is longer."""

    title = " ".join(message.split()[:TITLE_WORDS])
    if len(message.strip()) > TITLE_ELLIPSIS_AFTER:
        title += "..."
    return title


@dataclass
class _SessionEntry:
    lock: threading.Lock
    session: ConversationSession
    last_access: float


class ConversationContextManager:
    """Keep each session's turns in order, bounded to ``max_turns``.

    Sessions are keyed by ``(user_id, session_id)`` so one user can never read or extend
    another user's session by guessing its id. Appends to a session are serialized by that
    session's lock; different sessions never contend.
    """

    def __init__(
        self,
        *,
        max_turns: int = 20,
        store: Optional[SessionStore] = None,
        summarizer: Optional[Summarizer] = None,
        summary_turns: int = 6,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self._max_turns = max_turns
        self._store = store
        self._summarizer = summarizer
        self._summary_turns = summary_turns
        self._clock = clock
        self._sessions: Dict[Tuple[str, str], _SessionEntry] = {}

    @property
    def max_turns(self) -> int:
        return self._max_turns

    def get_session(self, session_id: str, user_id: str) -> ConversationSession:
        """Return a snapshot, creating an empty session when the id is unknown or expired."""

        entry = self._entry(session_id, user_id)
        with entry.lock:
            entry.last_access = self._clock()
            return entry.session

    def append_turn(self, session_id: str, role: str, text: str, *, user_id: str) -> ConversationSession:
        return self.append_turns(session_id, [Turn(role=role, text=text)], user_id=user_id)

    def append_turns(self, session_id: str, turns: Iterable[Turn], *, user_id: str) -> ConversationSession:
        """Append ``turns`` as one atomic step, evicting the oldest turns beyond the limit."""

        new_turns = tuple(turns)
        entry = self._entry(session_id, user_id)
        with entry.lock:
            current = entry.session
            combined = current.turns + new_turns
            evicted = max(0, len(combined) - self._max_turns)
            title = current.title
            if title is None:
                opening = next((turn for turn in combined if turn.role == "user"), None)
                title = derive_title(opening.text) if opening else None
            updated = current.model_copy(
                update={
                    "turns": combined[evicted:],
                    "title": title,
                    "updated_at": new_turns[-1].timestamp if new_turns else current.updated_at,
                }
            )
            if self._store is not None and new_turns:
                self._write_through(updated, new_turns)
            entry.session = updated
            entry.last_access = self._clock()
        if evicted:
            logger.debug("Evicted %s turn(s)", evicted, extra={"session_id": session_id})
        return updated

    def build_query(self, session: ConversationSession) -> RetrievalQuery:
        """Derive the retrieval query from the latest user turn plus an optional summary."""

        latest = session.latest_user_turn
        if latest is None:
            raise ValueError("Session has no user turn to build a query from")
        summary = None
        if self._summarizer is not None:
            earlier = [turn for turn in session.turns if turn is not latest][-self._summary_turns :]
            if earlier:
                try:
                    summary = self._summarizer(earlier)
                except Exception:
                    logger.exception("Conversation summarizer failed", extra={"session_id": session.session_id})
        return RetrievalQuery(
            session_id=session.session_id,
            user_id=session.user_id,
            text=latest.text,
            summary=summary or None,
        )

    def expire(self, session_id: str, user_id: str) -> bool:
        removed = self._sessions.pop((user_id, session_id), None) is not None
        if self._store is not None:
            self._store.delete(session_id, user_id)
        return removed

    def purge_idle(self, max_idle: float) -> int:
        """Drop in-memory sessions idle for longer than ``max_idle`` seconds."""

        cutoff = self._clock() - max_idle
        purged = 0
        for key, entry in list(self._sessions.items()):
            # Sessions with an append in progress are skipped until the next sweep.
            if not entry.lock.acquire(blocking=False):
                continue
            try:
                if entry.last_access < cutoff and self._sessions.get(key) is entry:
                    del self._sessions[key]
                    purged += 1
            finally:
                entry.lock.release()
        if purged:
            logger.info("Purged %s idle chat session(s)", purged)
        return purged

    def _entry(self, session_id: str, user_id: str) -> _SessionEntry:
        key = (user_id, session_id)
        entry = self._sessions.get(key)
        if entry is not None:
            return entry
        session = self._hydrate(session_id, user_id)
        candidate = _SessionEntry(lock=threading.Lock(), session=session, last_access=self._clock())
        # setdefault is atomic, so concurrent first requests end up sharing one entry.
        return self._sessions.setdefault(key, candidate)

    def _hydrate(self, session_id: str, user_id: str) -> ConversationSession:
        if self._store is not None:
            try:
                stored = self._store.load(session_id, user_id, limit=self._max_turns)
            except Exception:
                logger.exception("Unable to load stored session", extra={"session_id": session_id})
                stored = None
            if stored is not None:
                return stored
        return ConversationSession(session_id=session_id, user_id=user_id)

    def _write_through(self, session: ConversationSession, turns: Sequence[Turn]) -> None:
        assert self._store is not None
        try:
            self._store.append(session, turns)
        except Exception:
            # The in-memory history stays authoritative for this process.
            logger.exception("Unable to persist chat turns", extra={"session_id": session.session_id})


__all__ = ["ConversationContextManager", "SessionStore", "Summarizer", "derive_title"]
