"""Persistence collaborators backed by SQLite."""

from .conversations import SqlSessionStore
from .receipts import SqlFragmentStore, find_receipt_by_image_hash, save_extraction
from .repository import get_engine, get_session, reset_repository_state, session_scope

__all__ = [
    "SqlFragmentStore",
    "SqlSessionStore",
    "find_receipt_by_image_hash",
    "get_engine",
    "get_session",
    "reset_repository_state",
    "save_extraction",
    "session_scope",
]
