"""Retrieval-augmented conversation engine."""

from .context import ConversationContextManager, SessionStore, derive_title
from .prompt import PromptAssembler, PromptBudgetExceeded
from .service import ChatService
from .synthesizer import ResponseSynthesizer

__all__ = [
    "ChatService",
    "ConversationContextManager",
    "PromptAssembler",
    "PromptBudgetExceeded",
    "ResponseSynthesizer",
    "SessionStore",
    "derive_title",
]
