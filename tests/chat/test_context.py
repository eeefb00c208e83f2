"""Tests for bounded conversation context."""

from __future__ import annotations

import threading

import pytest

from heybills.chat.context import ConversationContextManager, derive_title
from heybills.models.chat import ConversationSession, Turn


class RecordingStore:
    def __init__(self, stored=None, fail: bool = False) -> None:
        self.stored = stored
        self.fail = fail
        self.appended = []
        self.deleted = []

    def load(self, session_id, user_id, *, limit):
        return self.stored

    def append(self, session, turns):
        if self.fail:
            raise RuntimeError("database is locked")
        self.appended.append((session.session_id, [turn.text for turn in turns]))

    def delete(self, session_id, user_id):
        self.deleted.append((session_id, user_id))


def test_unknown_session_starts_empty():
    manager = ConversationContextManager()

    session = manager.get_session("s1", "u1")

    assert session.turns == ()
    assert session.user_id == "u1"
    assert session.title is None


def test_oldest_turns_are_evicted_in_order():
    manager = ConversationContextManager(max_turns=3)
    for index in range(5):
        manager.append_turn("s1", "user" if index % 2 == 0 else "assistant", f"turn {index}", user_id="u1")

    session = manager.get_session("s1", "u1")

    assert [turn.text for turn in session.turns] == ["turn 2", "turn 3", "turn 4"]


def test_sessions_are_scoped_to_their_user():
    manager = ConversationContextManager()
    manager.append_turn("shared-id", "user", "my receipts", user_id="alice")

    assert manager.get_session("shared-id", "bob").turns == ()
    assert len(manager.get_session("shared-id", "alice").turns) == 1


def test_concurrent_appends_are_not_lost():
    manager = ConversationContextManager(max_turns=1000)

    def _writer(worker: int) -> None:
        for index in range(10):
            manager.append_turn("s1", "user", f"{worker}-{index}", user_id="u1")

    threads = [threading.Thread(target=_writer, args=(worker,)) for worker in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    texts = [turn.text for turn in manager.get_session("s1", "u1").turns]
    assert len(texts) == 100
    for worker in range(10):
        own = [text for text in texts if text.startswith(f"{worker}-")]
        assert own == [f"{worker}-{index}" for index in range(10)]


def test_append_turns_is_atomic_pair():
    manager = ConversationContextManager(max_turns=4)
    manager.append_turns(
        "s1",
        [Turn(role="user", text="How much at Costco?"), Turn(role="assistant", text="$120.00")],
        user_id="u1",
    )

    session = manager.get_session("s1", "u1")
    assert [turn.role for turn in session.turns] == ["user", "assistant"]


def test_title_comes_from_first_user_message():
    manager = ConversationContextManager()
    manager.append_turn("s1", "user", "Where did I spend the most money last month?", user_id="u1")
    manager.append_turn("s1", "user", "And the month before?", user_id="u1")

    assert manager.get_session("s1", "u1").title == "Where did I spend the most..."
    assert derive_title("Coffee totals") == "Coffee totals"


def test_store_is_written_through_and_failures_are_tolerated():
    store = RecordingStore()
    manager = ConversationContextManager(store=store)
    manager.append_turn("s1", "user", "hello", user_id="u1")
    assert store.appended == [("s1", ["hello"])]

    failing = ConversationContextManager(store=RecordingStore(fail=True))
    session = failing.append_turn("s1", "user", "hello", user_id="u1")
    assert [turn.text for turn in session.turns] == ["hello"]


def test_stored_sessions_are_hydrated():
    stored = ConversationSession(session_id="s1", user_id="u1", turns=(Turn(role="user", text="earlier"),))
    manager = ConversationContextManager(store=RecordingStore(stored=stored))

    assert [turn.text for turn in manager.get_session("s1", "u1").turns] == ["earlier"]


def test_build_query_uses_latest_user_turn_and_summary():
    manager = ConversationContextManager(summarizer=lambda turns: f"{len(turns)} earlier turn(s)")
    manager.append_turn("s1", "user", "Show coffee receipts", user_id="u1")
    manager.append_turn("s1", "assistant", "Here they are", user_id="u1")
    session = manager.append_turn("s1", "user", "Only March please", user_id="u1")

    query = manager.build_query(session)

    assert query.text == "Only March please"
    assert query.user_id == "u1"
    assert query.summary == "2 earlier turn(s)"
    assert "Only March please" in query.embedding_text


def test_build_query_requires_a_user_turn():
    manager = ConversationContextManager()

    with pytest.raises(ValueError):
        manager.build_query(manager.get_session("s1", "u1"))


def test_expire_and_purge_idle():
    now = {"value": 0.0}
    store = RecordingStore()
    manager = ConversationContextManager(store=store, clock=lambda: now["value"])
    manager.append_turn("s1", "user", "hi", user_id="u1")
    manager.append_turn("s2", "user", "hi", user_id="u1")

    assert manager.expire("s1", "u1") is True
    assert store.deleted == [("s1", "u1")]

    now["value"] = 100.0
    manager.get_session("s3", "u1")
    assert manager.purge_idle(50.0) == 1
    assert manager.purge_idle(50.0) == 0
