"""Bounded prompt assembly for chat generation."""

from __future__ import annotations

import logging
from typing import List, Sequence

from heybills.models.chat import ContextFragment, GenerationRequest, Turn

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are Hey Bills Assistant, a helper for managing receipts, warranties and spending patterns.

INSTRUCTIONS:
1. Answer questions about receipts, spending patterns and financial data
2. Use the provided receipt context to give accurate, specific answers
3. If no relevant context is provided, say so and offer general guidance
4. Be helpful, concise and friendly
5. Format monetary amounts clearly (e.g., $123.45)
6. Include dates in a readable format (e.g., March 15, 2024)
7. When referring to a specific receipt, mention the merchant, amount and date
8. Never invent receipts that are not in the context

RESPONSE STYLE:
- Conversational but professional
- Bullet points for lists
- Suggest actions when appropriate"""

CONTEXT_HEADER = "CONTEXT FROM USER'S RECEIPTS:"


class PromptBudgetExceeded(ValueError):
    """The current user turn alone does not fit the prompt budget."""


def render_fragment(fragment: ContextFragment) -> str:
    parts = [f"Receipt #{fragment.receipt_id}"]
    if fragment.merchant:
        parts.append(fragment.merchant)
    if fragment.receipt_date:
        parts.append(fragment.receipt_date.isoformat())
    return f"- {' | '.join(parts)} (relevance {fragment.score:.2f})\n  {fragment.excerpt}"


def render_context(fragments: Sequence[ContextFragment]) -> str:
    return "\n".join([CONTEXT_HEADER, *(render_fragment(fragment) for fragment in fragments)])


def _context_chars(fragments: Sequence[ContextFragment]) -> int:
    # The context message is omitted entirely when no fragment survives.
    return len(render_context(fragments)) if fragments else 0


class PromptAssembler:
    """Fit history, retrieved fragments and the user turn into a character budget.

    Oldest history turns are dropped first, then the lowest-scoring fragments. The user turn
    is never dropped.
    """

    def __init__(
        self,
        *,
        budget_chars: int = 6000,
        history_window: int = 6,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self._budget = budget_chars
        self._history_window = history_window
        self._system_prompt = system_prompt

    @property
    def budget_chars(self) -> int:
        return self._budget

    def assemble(
        self,
        history: Sequence[Turn],
        fragments: Sequence[ContextFragment],
        user_turn: Turn,
        timeout: float,
    ) -> GenerationRequest:
        if len(user_turn.text) > self._budget:
            raise PromptBudgetExceeded(
                f"Message of {len(user_turn.text)} characters exceeds the {self._budget} character budget"
            )

        kept_history: List[Turn] = list(history)[-self._history_window :] if self._history_window > 0 else []
        kept_fragments = sorted(fragments, key=lambda fragment: fragment.score, reverse=True)
        history_size = sum(len(turn.text) for turn in kept_history)
        context_size = _context_chars(kept_fragments)

        size = len(user_turn.text) + history_size + context_size
        while size > self._budget and kept_history:
            size -= len(kept_history.pop(0).text)
        while size > self._budget and kept_fragments:
            kept_fragments.pop()
            size -= context_size
            context_size = _context_chars(kept_fragments)
            size += context_size

        dropped_turns = len(history) - len(kept_history)
        dropped_fragments = len(fragments) - len(kept_fragments)
        if dropped_fragments:
            logger.debug(
                "Prompt budget %s: dropped %s turn(s) and %s fragment(s)",
                self._budget,
                dropped_turns,
                dropped_fragments,
            )
        return GenerationRequest(
            system_prompt=self._system_prompt,
            history=tuple(kept_history),
            fragments=tuple(kept_fragments),
            user_turn=user_turn,
            timeout=timeout,
            budget_chars=self._budget,
            size_chars=size,
            dropped_turns=dropped_turns,
            dropped_fragments=dropped_fragments,
        )


__all__ = [
    "CONTEXT_HEADER",
    "PromptAssembler",
    "PromptBudgetExceeded",
    "SYSTEM_PROMPT",
    "render_context",
    "render_fragment",
]
