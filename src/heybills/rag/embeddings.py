"""Text embedding capabilities used for receipt indexing and chat retrieval."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Optional, Protocol

import httpx
import numpy as np

from heybills.config import Settings

logger = logging.getLogger(__name__)

EMBEDDING_TIMEOUT = 15.0


class Embedder(Protocol):
    dim: int

    def embed(self, text: str) -> np.ndarray:
        ...


class HashingEmbedder:
    """Deterministic feature-hashing embedder; no model download or network access."""

    def __init__(self, dim: int = 384, *, salt: bytes = b"heybills") -> None:
        self.dim = dim
        self._salt = salt

    def embed(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dim, dtype=np.float32)
        for token, freq in self._tokenize(text).items():
            token_seed = hashlib.sha256(self._salt + token.encode("utf-8")).digest()
            bucket = int.from_bytes(token_seed[:4], "big") % self.dim
            sign = 1.0 if (token_seed[4] & 1) == 0 else -1.0
            vector[bucket] += sign * freq
        norm = np.linalg.norm(vector)
        if norm:
            vector /= norm
        return vector

    @staticmethod
    def _tokenize(text: str) -> dict[str, float]:
        counts: dict[str, float] = {}
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            counts[token] = counts.get(token, 0.0) + 1.0
        return counts


class HttpEmbedder:
    """Call an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        dim: int,
        api_key: Optional[str] = None,
        timeout: float = EMBEDDING_TIMEOUT,
    ) -> None:
        self._endpoint = base_url.rstrip("/")
        if not self._endpoint.endswith("/embeddings"):
            self._endpoint = f"{self._endpoint}/embeddings"
        self._model = model
        self._api_key = api_key
        self._timeout = timeout
        self.dim = dim

    def embed(self, text: str) -> np.ndarray:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        with httpx.Client(timeout=self._timeout) as client:
            response = client.post(self._endpoint, json={"model": self._model, "input": text}, headers=headers)
        response.raise_for_status()
        data = response.json().get("data") or []
        if not data or "embedding" not in data[0]:
            raise ValueError("Embedding response did not include a vector.")
        vector = np.asarray(data[0]["embedding"], dtype=np.float32)
        if vector.shape != (self.dim,):
            raise ValueError(f"Embedding dimension {vector.shape[0]} does not match configured {self.dim}")
        return vector


def build_embedder(settings: Settings) -> Embedder:
    if settings.embedding_base_url:
        logger.info("Using HTTP embeddings model=%s", settings.embedding_model)
        return HttpEmbedder(
            base_url=settings.embedding_base_url,
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            api_key=settings.llm_api_key,
        )
    return HashingEmbedder(settings.embedding_dim)


__all__ = ["Embedder", "HashingEmbedder", "HttpEmbedder", "build_embedder"]
