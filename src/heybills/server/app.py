"""ASGI application for Hey Bills."""
# mypy: ignore-errors

from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Optional
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Body, Depends, FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from heybills import __version__, metrics
from heybills.chat.prompt import PromptBudgetExceeded
from heybills.chat.service import ChatService
from heybills.config import Settings, get_settings
from heybills.errors import GenerationError, RetrievalScopeViolation
from heybills.logging_utils import configure_logging as configure_app_logging
from heybills.models.chat import ChatReply, ConversationSession
from heybills.models.engine import EngineStatus
from heybills.models.receipt import (
    DegradedModePayload,
    ExtractionFailure,
    ExtractionRequest,
    ExtractionSuccess,
)
from heybills.ocr.lifecycle import EngineLifecycleManager
from heybills.ocr.pipeline import ExtractionPipeline
from heybills.server import deps

logger = logging.getLogger(__name__)

MAX_RECEIPT_UPLOAD_BYTES = 10 * 1024 * 1024  # 10 MiB


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    session_id: Optional[str] = Field(default=None, min_length=1, max_length=128)


class ReceiptExtractionResponse(BaseModel):
    receipt_id: Optional[int] = None
    duplicate: bool = False
    result: ExtractionSuccess


class HealthResponse(BaseModel):
    status: str
    version: str
    ocr: EngineStatus


def _json_safe(value: Any) -> Any:
    """Convert non-serializable values into JSON-safe representations."""

    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value.hex()
    if isinstance(value, (list, tuple)):
        return [_json_safe(entry) for entry in value]
    if isinstance(value, dict):
        return {key: _json_safe(sub_value) for key, sub_value in value.items()}
    return repr(value)


def _normalize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{key: _json_safe(value) for key, value in error.items()} for error in errors]


def _retry_headers(retry_after: Optional[int]) -> dict[str, str]:
    return {"Retry-After": str(retry_after)} if retry_after is not None else {}


def _configure_logging(settings: Settings) -> None:
    secrets = [settings.api_token or "", settings.llm_api_key or ""]
    configure_app_logging(settings.log_level, settings.log_format, secrets)


def _degraded_response(failure: ExtractionFailure) -> JSONResponse:
    payload = DegradedModePayload.from_failure(failure)
    return JSONResponse(
        status_code=failure.error.http_status,
        content=payload.model_dump(mode="json", by_alias=True),
        headers=_retry_headers(failure.retry_after),
    )


def create_app(services: Optional[deps.Services] = None) -> FastAPI:
    """Create and configure a FastAPI application instance."""

    settings = services.settings if services is not None else get_settings()
    _configure_logging(settings)
    if services is None:
        services = deps.build_services(settings)

    application = FastAPI(title="Hey Bills Document Intelligence", version=__version__)
    application.state.services = services

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        services.contexts.purge_idle,
        "interval",
        seconds=max(settings.chat_session_idle_seconds / 4, 1.0),
        args=[settings.chat_session_idle_seconds],
        max_instances=1,
        coalesce=True,
    )

    @application.on_event("startup")
    async def start_background_work() -> None:
        scheduler.start()
        if services.reprocess is not None:
            services.reprocess.start()

    @application.on_event("shutdown")
    async def stop_background_work() -> None:
        if scheduler.running:
            scheduler.shutdown(wait=False)
        services.close()

    if settings.log_requests:
        access_logger = logging.getLogger("heybills.access")

        @application.middleware("http")
        async def log_request_response(request: Request, call_next):
            """Log request/response details without leaking sensitive data."""

            request_id = request.headers.get("X-Request-ID") or uuid4().hex
            request.state.request_id = request_id
            start = perf_counter()
            path = request.url.path
            method = request.method
            try:
                response: Response = await call_next(request)
            except Exception:
                duration_ms = (perf_counter() - start) * 1000
                access_logger.exception(
                    "HTTP %s %s status=500 duration_ms=%.2f",
                    method,
                    path,
                    duration_ms,
                    extra={"request_id": request_id},
                )
                metrics.REQUEST_COUNT.labels(method=method, path=path, status="500").inc()
                metrics.REQUEST_LATENCY.labels(method=method, path=path).observe(duration_ms / 1000.0)
                raise

            duration_ms = (perf_counter() - start) * 1000
            response.headers.setdefault("X-Request-ID", request_id)
            access_logger.info(
                "HTTP %s %s status=%s duration_ms=%.2f",
                method,
                path,
                response.status_code,
                duration_ms,
                extra={"request_id": request_id},
            )
            metrics.REQUEST_COUNT.labels(method=method, path=path, status=str(response.status_code)).inc()
            metrics.REQUEST_LATENCY.labels(method=method, path=path).observe(duration_ms / 1000.0)
            return response

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        request_id = getattr(request.state, "request_id", None)
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id} if request_id else None,
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": _normalize_validation_errors(exc.errors())},
        )

    @application.exception_handler(GenerationError)
    async def generation_exception_handler(request: Request, exc: GenerationError):
        info = exc.info
        return JSONResponse(
            status_code=info.http_status,
            content={
                "error": "Chat unavailable",
                "code": info.code.value,
                "message": info.user_message,
                "retryable": info.retryable,
                "retryAfter": exc.retry_after,
            },
            headers=_retry_headers(exc.retry_after),
        )

    @application.exception_handler(RetrievalScopeViolation)
    async def scope_violation_handler(request: Request, exc: RetrievalScopeViolation):
        # Never echo which receipts were involved back to the caller.
        return JSONResponse(
            status_code=exc.info.http_status,
            content={"error": "Internal error", "code": exc.code.value, "message": exc.info.user_message},
        )

    @application.get("/health", response_model=HealthResponse, summary="Service health")
    def health(lifecycle: EngineLifecycleManager = Depends(deps.get_lifecycle)) -> HealthResponse:
        engine_status = lifecycle.status()
        overall = "degraded" if engine_status.state == "failed" else "ok"
        return HealthResponse(status=overall, version=__version__, ocr=engine_status)

    @application.post("/engine/reset", response_model=EngineStatus, summary="Reset the OCR engine")
    def engine_reset(
        lifecycle: EngineLifecycleManager = Depends(deps.get_lifecycle),
        auth: None = Depends(deps.require_api_token),
    ) -> EngineStatus:
        lifecycle.reset()
        return lifecycle.status()

    @application.post("/engine/retry", response_model=EngineStatus, summary="Clear the OCR cool-down")
    def engine_retry(
        lifecycle: EngineLifecycleManager = Depends(deps.get_lifecycle),
        auth: None = Depends(deps.require_api_token),
    ) -> EngineStatus:
        if not lifecycle.retry():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="OCR engine is not in a failed state")
        return lifecycle.status()

    @application.post(
        "/receipts/extract",
        response_model=ReceiptExtractionResponse,
        status_code=status.HTTP_201_CREATED,
        summary="Extract receipt fields from an image",
        responses={422: {"model": DegradedModePayload}, 503: {"model": DegradedModePayload}},
    )
    def receipts_extract(
        request: Request,
        file: UploadFile = File(...),
        user_id: str = Depends(deps.require_user_id),
        services: deps.Services = Depends(deps.get_services),
        pipeline: ExtractionPipeline = Depends(deps.get_extraction_pipeline),
        find_duplicate: deps.DuplicateFinder = Depends(deps.get_duplicate_finder),
        auth: None = Depends(deps.require_api_token),
    ):
        content = file.file.read()
        if not content:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file upload")
        if len(content) > MAX_RECEIPT_UPLOAD_BYTES:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Receipt too large")

        extraction_request = ExtractionRequest(
            request_id=getattr(request.state, "request_id", None) or uuid4().hex,
            image=content,
            user_id=user_id,
            filename=file.filename,
            content_type=file.content_type,
        )
        result = pipeline.extract_receipt(extraction_request)
        if isinstance(result, ExtractionFailure):
            if services.reprocess is not None:
                services.reprocess.submit(extraction_request, result)
            return _degraded_response(result)

        existing = find_duplicate(user_id, result.metadata.image_hash)
        if existing is not None:
            return ReceiptExtractionResponse(receipt_id=existing, duplicate=True, result=result)
        receipt_id = services.index(user_id, result)
        return ReceiptExtractionResponse(receipt_id=receipt_id, result=result)

    @application.post("/chat", response_model=ChatReply, summary="Ask about your receipts")
    def chat(
        payload: ChatRequest = Body(...),
        user_id: str = Depends(deps.require_user_id),
        chat_service: ChatService = Depends(deps.get_chat_service),
        auth: None = Depends(deps.require_api_token),
    ) -> ChatReply:
        session_id = payload.session_id or uuid4().hex
        try:
            return chat_service.chat(session_id, user_id, payload.message)
        except PromptBudgetExceeded as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    @application.get("/chat/{session_id}", response_model=ConversationSession, summary="Conversation history")
    def chat_history(
        session_id: str,
        user_id: str = Depends(deps.require_user_id),
        chat_service: ChatService = Depends(deps.get_chat_service),
        auth: None = Depends(deps.require_api_token),
    ) -> ConversationSession:
        return chat_service.history(session_id, user_id)

    @application.delete(
        "/chat/{session_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
        summary="End a conversation",
    )
    def chat_end(
        session_id: str,
        user_id: str = Depends(deps.require_user_id),
        chat_service: ChatService = Depends(deps.get_chat_service),
        auth: None = Depends(deps.require_api_token),
    ) -> Response:
        chat_service.end_session(session_id, user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @application.get("/metrics", include_in_schema=False)
    def metrics_endpoint() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    logger.debug("Application created with log level %s", settings.log_level)
    return application


__all__ = ["create_app"]
