"""Response synthesis under a hard timeout and circuit breaker."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional, Sequence

from heybills import metrics
from heybills.chat.context import ConversationContextManager
from heybills.chat.prompt import PromptAssembler
from heybills.errors import GenerationError, GenerationFailed, GenerationTimeout
from heybills.llm.breaker import CircuitBreaker
from heybills.llm.client import TextGenerator
from heybills.models.chat import ChatReply, ContextFragment, ConversationSession, ReplyMetadata, Turn

logger = logging.getLogger(__name__)


class ResponseSynthesizer:
    """Generate a reply and commit it to the session only when generation succeeds.

    Generation runs on a worker pool so the caller can stop waiting at ``timeout`` while the
    call itself finishes in the background; a late result is discarded.
    """

    def __init__(
        self,
        generator: TextGenerator,
        contexts: ConversationContextManager,
        assembler: PromptAssembler,
        *,
        timeout: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
        max_workers: int = 4,
    ) -> None:
        self._generator = generator
        self._contexts = contexts
        self._assembler = assembler
        self._timeout = timeout
        self._breaker = breaker or CircuitBreaker()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="chat-generation")

    def synthesize(
        self,
        session: ConversationSession,
        user_turn: Turn,
        fragments: Sequence[ContextFragment],
        *,
        started_at: Optional[float] = None,
    ) -> ChatReply:
        started = started_at if started_at is not None else time.monotonic()
        log_extra = {"session_id": session.session_id, "user_id": session.user_id}
        request = self._assembler.assemble(session.turns, fragments, user_turn, self._timeout)

        try:
            self._breaker.allow()
        except GenerationFailed:
            metrics.CHAT_GENERATIONS.labels(outcome="circuit_open").inc()
            logger.warning("Generation skipped; circuit open", extra=log_extra)
            raise

        call_started = time.monotonic()
        try:
            future = self._executor.submit(self._generator.generate, request.to_messages(), timeout=self._timeout)
            text = future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            future.cancel()
            self._fail("timeout", log_extra)
            raise GenerationTimeout(f"Generation exceeded {self._timeout}s") from exc
        except GenerationTimeout:
            self._fail("timeout", log_extra)
            raise
        except GenerationError:
            self._fail("failed", log_extra)
            raise
        except Exception as exc:
            self._fail("failed", log_extra)
            raise GenerationFailed(f"Generation failed: {exc}") from exc

        reply = (text or "").strip()
        if not reply:
            self._fail("failed", log_extra)
            raise GenerationFailed("Generation returned an empty reply")

        self._breaker.record_success()
        metrics.CHAT_GENERATIONS.labels(outcome="succeeded").inc()
        metrics.CHAT_GENERATION_LATENCY.observe(time.monotonic() - call_started)

        assistant_turn = Turn(role="assistant", text=reply)
        self._contexts.append_turns(session.session_id, [user_turn, assistant_turn], user_id=session.user_id)

        return ChatReply(
            session_id=session.session_id,
            reply=reply,
            used_fragments=list(request.fragments),
            metadata=ReplyMetadata(
                context_used=len(request.fragments),
                processing_time_ms=int((time.monotonic() - started) * 1000),
                dropped_turns=request.dropped_turns,
                dropped_fragments=request.dropped_fragments,
                sources=[fragment.receipt_id for fragment in request.fragments],
            ),
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _fail(self, outcome: str, log_extra: dict) -> None:
        self._breaker.record_failure()
        metrics.CHAT_GENERATIONS.labels(outcome=outcome).inc()
        logger.warning("Generation %s; session left unchanged", outcome, extra=log_extra)


__all__ = ["ResponseSynthesizer"]
