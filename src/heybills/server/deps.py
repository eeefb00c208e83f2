"""Service wiring and dependency definitions for the Hey Bills API server."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from fastapi import Depends, Header, HTTPException, Request, status

from heybills.chat.context import ConversationContextManager, SessionStore
from heybills.chat.prompt import PromptAssembler
from heybills.chat.service import ChatService
from heybills.chat.synthesizer import ResponseSynthesizer
from heybills.config import Settings
from heybills.db.conversations import SqlSessionStore
from heybills.db.receipts import SqlFragmentStore, find_receipt_by_image_hash, save_extraction
from heybills.llm.breaker import CircuitBreaker
from heybills.llm.client import TextGenerator, build_generator
from heybills.models.receipt import ExtractionRequest, ExtractionSuccess
from heybills.ocr.engine import OcrEngine, build_engine_factory
from heybills.ocr.lifecycle import CooldownPolicy, EngineLifecycleManager
from heybills.ocr.parser import ReceiptParser
from heybills.ocr.pipeline import ExtractionPipeline
from heybills.ocr.worker import ReprocessWorker
from heybills.rag.embeddings import Embedder, build_embedder
from heybills.rag.indexing import ReceiptWriter, index_extraction
from heybills.rag.retrieval import FragmentStore, VectorRetrievalEngine


DuplicateFinder = Callable[[str, str], Optional[int]]


@dataclass
class Services:
    """Long-lived collaborators owned by one application instance."""

    settings: Settings
    lifecycle: EngineLifecycleManager
    pipeline: ExtractionPipeline
    embedder: Embedder
    contexts: ConversationContextManager
    chat: ChatService
    receipt_writer: ReceiptWriter
    reprocess: Optional[ReprocessWorker] = None

    def index(self, user_id: str, result: ExtractionSuccess) -> int:
        return index_extraction(result, user_id, self.embedder, self.receipt_writer)

    def close(self) -> None:
        if self.reprocess is not None:
            self.reprocess.stop()
        self.chat.close()
        self.lifecycle.shutdown()


def _write_receipt(user_id: str, result: ExtractionSuccess, document: str, embedding: np.ndarray) -> int:
    return save_extraction(user_id, result, document, embedding)


def build_services(
    settings: Settings,
    *,
    engine_factory: Optional[Callable[[], OcrEngine]] = None,
    generator: Optional[TextGenerator] = None,
    embedder: Optional[Embedder] = None,
    fragment_store: Optional[FragmentStore] = None,
    session_store: Optional[SessionStore] = None,
    receipt_writer: Optional[ReceiptWriter] = None,
) -> Services:
    """Assemble the OCR and chat services from settings, with optional overrides."""

    lifecycle = EngineLifecycleManager(
        engine_factory or build_engine_factory(settings),
        init_timeout=settings.ocr_init_timeout,
        policy=CooldownPolicy.from_settings(settings),
    )
    pipeline = ExtractionPipeline(
        lifecycle,
        ReceiptParser(),
        confidence_threshold=settings.ocr_field_confidence_threshold,
    )
    embedder = embedder or build_embedder(settings)
    contexts = ConversationContextManager(
        max_turns=settings.chat_max_turns,
        store=session_store if session_store is not None else SqlSessionStore(),
    )
    synthesizer = ResponseSynthesizer(
        generator or build_generator(settings),
        contexts,
        PromptAssembler(
            budget_chars=settings.chat_prompt_budget_chars,
            history_window=settings.chat_history_window,
        ),
        timeout=settings.chat_generation_timeout,
        breaker=CircuitBreaker(
            failure_threshold=settings.chat_breaker_failure_threshold,
            reset_seconds=settings.chat_breaker_reset_seconds,
        ),
        max_workers=settings.chat_generation_workers,
    )
    chat = ChatService(
        contexts,
        embedder,
        VectorRetrievalEngine(
            fragment_store if fragment_store is not None else SqlFragmentStore(),
            min_similarity=settings.chat_min_similarity,
            default_k=settings.chat_top_k,
        ),
        synthesizer,
        top_k=settings.chat_top_k,
        max_message_chars=settings.chat_max_message_chars,
    )
    services = Services(
        settings=settings,
        lifecycle=lifecycle,
        pipeline=pipeline,
        embedder=embedder,
        contexts=contexts,
        chat=chat,
        receipt_writer=receipt_writer or _write_receipt,
    )
    if settings.ocr_reprocess_enabled:

        def _deliver(request: ExtractionRequest, result: ExtractionSuccess) -> None:
            if request.user_id:
                services.index(request.user_id, result)

        services.reprocess = ReprocessWorker(
            pipeline,
            _deliver,
            poll_interval=settings.ocr_reprocess_poll_interval,
            batch_size=settings.ocr_reprocess_batch_size,
            max_attempts=settings.ocr_reprocess_max_attempts,
            max_pending=settings.ocr_reprocess_max_pending,
        )
    return services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_extraction_pipeline(services: Services = Depends(get_services)) -> ExtractionPipeline:
    return services.pipeline


def get_chat_service(services: Services = Depends(get_services)) -> ChatService:
    return services.chat


def get_lifecycle(services: Services = Depends(get_services)) -> EngineLifecycleManager:
    return services.lifecycle


def get_duplicate_finder() -> DuplicateFinder:
    return find_receipt_by_image_hash


def require_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-ID")) -> str:
    """Return the caller's user id; every receipt and session is scoped to it."""

    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
    return user_id


def require_api_token(
    request: Request,
    services: Services = Depends(get_services),
) -> None:
    """Ensure requests carry the API token configured for this application."""

    token = services.settings.api_token
    if not token:
        return

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.split("Bearer ")[-1].strip() == token:
        return

    if request.headers.get("X-API-Key") == token:
        return

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
