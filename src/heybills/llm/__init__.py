"""Generation capability adapters and guards."""

from .breaker import BreakerState, CircuitBreaker
from .client import ContextEchoGenerator, OpenAICompatibleGenerator, TextGenerator, build_generator

__all__ = [
    "BreakerState",
    "CircuitBreaker",
    "ContextEchoGenerator",
    "OpenAICompatibleGenerator",
    "TextGenerator",
    "build_generator",
]
