"""Application configuration helpers."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

ENV_FILE_CANDIDATES = (Path(".env"), Path(".env.local"))


class Settings(BaseModel):
    """Global application settings loaded from environment variables or .env files."""

    database_path: Path = Field(
        default=Path("./data/heybills.db"),
        description="SQLite database location for receipts and chat history.",
    )
    api_token: Optional[str] = Field(
        default=None,
        description="Token required for authenticated endpoints when set.",
    )
    log_level: str = Field(default="INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(default="plain", description="Logging format (plain/json).")
    log_requests: bool = Field(default=True, description="Emit request access logs when true.")

    ocr_lang: str = Field(default="eng", description="Tesseract language code.")
    ocr_page_segmentation_mode: int = Field(
        default=11,
        description="Tesseract page segmentation mode (11 = sparse text).",
    )
    ocr_init_timeout: float = Field(
        default=30.0,
        description="Seconds a caller waits for engine initialization before giving up.",
    )
    ocr_recognition_timeout: float = Field(
        default=60.0,
        description="Seconds allowed for a single recognition call.",
    )
    ocr_cooldown_seconds: float = Field(
        default=300.0,
        description="Cool-down after a failed engine initialization.",
    )
    ocr_cooldown_backoff: float = Field(
        default=2.0,
        description="Multiplier applied to the cool-down for each consecutive failure.",
    )
    ocr_cooldown_max_seconds: float = Field(
        default=1800.0,
        description="Upper bound for the grown cool-down.",
    )
    ocr_incompatible_cooldown_seconds: float = Field(
        default=1800.0,
        description="Cool-down after an incompatibility failure.",
    )
    ocr_busy_retry_after: float = Field(
        default=5.0,
        description="Retry hint (seconds) when the engine is busy initializing.",
    )
    ocr_field_confidence_threshold: float = Field(
        default=0.6,
        description="Minimum per-field confidence considered trustworthy.",
    )
    ocr_reprocess_enabled: bool = Field(
        default=False,
        description="Queue reprocessable extraction failures for a background retry.",
    )
    ocr_reprocess_poll_interval: float = Field(
        default=30.0,
        description="Seconds between reprocess worker iterations.",
    )
    ocr_reprocess_batch_size: int = Field(
        default=5,
        description="Maximum queued extractions retried per worker iteration.",
    )
    ocr_reprocess_max_attempts: int = Field(
        default=3,
        description="Attempts made for a queued extraction before it is dropped.",
    )
    ocr_reprocess_max_pending: int = Field(
        default=100,
        description="Queued extractions held at once; further failures are not queued.",
    )

    chat_max_turns: int = Field(default=20, description="Maximum turns retained per session.")
    chat_history_window: int = Field(
        default=6,
        description="Most recent turns offered to the prompt before budget truncation.",
    )
    chat_prompt_budget_chars: int = Field(
        default=6000,
        description="Character budget for history, context fragments and the user turn.",
    )
    chat_max_message_chars: int = Field(
        default=2000,
        description="Maximum accepted length of a single chat message.",
    )
    chat_top_k: int = Field(default=5, description="Context fragments retrieved per query.")
    chat_min_similarity: float = Field(
        default=0.3,
        description="Minimum cosine similarity for a fragment to be used as context.",
    )
    chat_generation_timeout: float = Field(
        default=30.0,
        description="Hard timeout (seconds) for a single generation call.",
    )
    chat_breaker_failure_threshold: int = Field(
        default=5,
        description="Consecutive generation failures that open the circuit breaker.",
    )
    chat_breaker_reset_seconds: float = Field(
        default=60.0,
        description="Seconds the circuit stays open before a trial call is allowed.",
    )
    chat_generation_workers: int = Field(
        default=4,
        description="Threads available for in-flight generation calls.",
    )
    chat_session_idle_seconds: float = Field(
        default=3600.0,
        description="Idle time after which in-memory sessions are purged.",
    )

    llm_base_url: Optional[str] = Field(
        default=None,
        description="LLM base URL (OpenAI/OpenRouter-compatible or Ollama).",
    )
    llm_api_key: Optional[str] = Field(default=None, description="Bearer key for the LLM endpoint.")
    llm_provider: str = Field(default="openai", description="LLM provider (openai or ollama).")
    llm_model: str = Field(
        default="meta-llama/llama-3.1-8b-instruct:free",
        description="Model identifier passed to the LLM endpoint.",
    )
    llm_temperature: float = Field(default=0.7, description="Sampling temperature.")
    llm_max_tokens: int = Field(default=1000, description="Maximum tokens to request.")

    embedding_base_url: Optional[str] = Field(
        default=None,
        description="OpenAI-compatible embeddings endpoint; feature hashing is used when unset.",
    )
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="Embedding model identifier.",
    )
    embedding_dim: int = Field(default=384, description="Embedding dimension.")

    model_config = ConfigDict(frozen=True)


def _coerce_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


_ENV_FIELDS: dict[str, tuple[str, Callable[[str], object]]] = {
    "HEYBILLS_DATABASE_PATH": ("database_path", Path),
    "HEYBILLS_API_TOKEN": ("api_token", str),
    "HEYBILLS_LOG_LEVEL": ("log_level", str),
    "HEYBILLS_LOG_FORMAT": ("log_format", str),
    "HEYBILLS_LOG_REQUESTS": ("log_requests", _coerce_bool),
    "HEYBILLS_OCR_LANG": ("ocr_lang", str),
    "HEYBILLS_OCR_PSM": ("ocr_page_segmentation_mode", int),
    "HEYBILLS_OCR_INIT_TIMEOUT": ("ocr_init_timeout", float),
    "HEYBILLS_OCR_RECOGNITION_TIMEOUT": ("ocr_recognition_timeout", float),
    "HEYBILLS_OCR_COOLDOWN_SECONDS": ("ocr_cooldown_seconds", float),
    "HEYBILLS_OCR_COOLDOWN_BACKOFF": ("ocr_cooldown_backoff", float),
    "HEYBILLS_OCR_COOLDOWN_MAX_SECONDS": ("ocr_cooldown_max_seconds", float),
    "HEYBILLS_OCR_INCOMPATIBLE_COOLDOWN_SECONDS": ("ocr_incompatible_cooldown_seconds", float),
    "HEYBILLS_OCR_BUSY_RETRY_AFTER": ("ocr_busy_retry_after", float),
    "HEYBILLS_OCR_FIELD_CONFIDENCE_THRESHOLD": ("ocr_field_confidence_threshold", float),
    "HEYBILLS_OCR_REPROCESS_ENABLED": ("ocr_reprocess_enabled", _coerce_bool),
    "HEYBILLS_OCR_REPROCESS_POLL_INTERVAL": ("ocr_reprocess_poll_interval", float),
    "HEYBILLS_OCR_REPROCESS_BATCH_SIZE": ("ocr_reprocess_batch_size", int),
    "HEYBILLS_OCR_REPROCESS_MAX_ATTEMPTS": ("ocr_reprocess_max_attempts", int),
    "HEYBILLS_OCR_REPROCESS_MAX_PENDING": ("ocr_reprocess_max_pending", int),
    "HEYBILLS_CHAT_MAX_TURNS": ("chat_max_turns", int),
    "HEYBILLS_CHAT_HISTORY_WINDOW": ("chat_history_window", int),
    "HEYBILLS_CHAT_PROMPT_BUDGET_CHARS": ("chat_prompt_budget_chars", int),
    "HEYBILLS_CHAT_MAX_MESSAGE_CHARS": ("chat_max_message_chars", int),
    "HEYBILLS_CHAT_TOP_K": ("chat_top_k", int),
    "HEYBILLS_CHAT_MIN_SIMILARITY": ("chat_min_similarity", float),
    "HEYBILLS_CHAT_GENERATION_TIMEOUT": ("chat_generation_timeout", float),
    "HEYBILLS_CHAT_BREAKER_FAILURE_THRESHOLD": ("chat_breaker_failure_threshold", int),
    "HEYBILLS_CHAT_BREAKER_RESET_SECONDS": ("chat_breaker_reset_seconds", float),
    "HEYBILLS_CHAT_GENERATION_WORKERS": ("chat_generation_workers", int),
    "HEYBILLS_CHAT_SESSION_IDLE_SECONDS": ("chat_session_idle_seconds", float),
    "HEYBILLS_LLM_BASE_URL": ("llm_base_url", str),
    "HEYBILLS_LLM_API_KEY": ("llm_api_key", str),
    "HEYBILLS_LLM_PROVIDER": ("llm_provider", str),
    "HEYBILLS_LLM_MODEL": ("llm_model", str),
    "HEYBILLS_LLM_TEMPERATURE": ("llm_temperature", float),
    "HEYBILLS_LLM_MAX_TOKENS": ("llm_max_tokens", int),
    "HEYBILLS_EMBEDDING_BASE_URL": ("embedding_base_url", str),
    "HEYBILLS_EMBEDDING_MODEL": ("embedding_model", str),
    "HEYBILLS_EMBEDDING_DIM": ("embedding_dim", int),
}


def _parse_env_file(path: Path) -> dict[str, str]:
    payload: dict[str, str] = {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, raw_value = line.split("=", 1)
                payload[key.strip()] = raw_value.strip()
    except FileNotFoundError:
        return {}
    return payload


def _load_env_file_values() -> dict[str, str]:
    values: dict[str, str] = {}
    for candidate in ENV_FILE_CANDIDATES:
        values.update(_parse_env_file(candidate))
    return values


def _load_from_env() -> dict[str, object]:
    """Load optional overrides from env vars (with .env fallbacks)."""

    file_values = _load_env_file_values()

    def _env(key: str) -> Optional[str]:
        return os.environ.get(key) or file_values.get(key)

    payload: dict[str, object] = {}
    for env_key, (field_name, coerce) in _ENV_FIELDS.items():
        raw = _env(env_key)
        if not raw:
            continue
        try:
            payload[field_name] = coerce(raw)
        except ValueError:
            continue
    # OpenRouter deployments only export the key under its vendor name.
    if "llm_api_key" not in payload and (openrouter_key := _env("OPENROUTER_API_KEY")):
        payload["llm_api_key"] = openrouter_key
    return payload


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings(**_load_from_env())
