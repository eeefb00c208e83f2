"""Prometheus metrics definitions for Hey Bills."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "heybills_http_requests_total",
    "Total number of HTTP requests processed by the Hey Bills API",
    ["method", "path", "status"],
)

REQUEST_LATENCY = Histogram(
    "heybills_http_request_duration_seconds",
    "Latency of HTTP requests processed by the Hey Bills API",
    ["method", "path"],
)

OCR_EXTRACTIONS = Counter(
    "heybills_ocr_extractions_total",
    "Receipt extractions by outcome (succeeded or the classified error code)",
    ["outcome"],
)

OCR_ENGINE_INITS = Counter(
    "heybills_ocr_engine_initializations_total",
    "OCR engine construction attempts by outcome",
    ["outcome"],
)

OCR_ENGINE_STATE = Gauge(
    "heybills_ocr_engine_state",
    "Current OCR engine lifecycle state (1 for the active state)",
    ["state"],
)

CHAT_GENERATIONS = Counter(
    "heybills_chat_generations_total",
    "Chat generation calls by outcome",
    ["outcome"],
)

CHAT_GENERATION_LATENCY = Histogram(
    "heybills_chat_generation_duration_seconds",
    "Latency of successful chat generation calls",
)

RETRIEVAL_FRAGMENTS = Histogram(
    "heybills_retrieval_fragments",
    "Number of context fragments returned per retrieval",
    buckets=(0, 1, 2, 3, 5, 8, 13),
)

RETRIEVAL_SCOPE_VIOLATIONS = Counter(
    "heybills_retrieval_scope_violations_total",
    "Retrieval results that crossed a user ownership boundary",
)

__all__ = [
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "OCR_EXTRACTIONS",
    "OCR_ENGINE_INITS",
    "OCR_ENGINE_STATE",
    "CHAT_GENERATIONS",
    "CHAT_GENERATION_LATENCY",
    "RETRIEVAL_FRAGMENTS",
    "RETRIEVAL_SCOPE_VIOLATIONS",
]
