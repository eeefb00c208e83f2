"""Receipt embeddings, indexing and user-scoped retrieval."""

from .embeddings import Embedder, HashingEmbedder, HttpEmbedder, build_embedder
from .indexing import index_extraction, receipt_document_text
from .retrieval import FragmentCandidate, FragmentStore, VectorRetrievalEngine

__all__ = [
    "Embedder",
    "FragmentCandidate",
    "FragmentStore",
    "HashingEmbedder",
    "HttpEmbedder",
    "VectorRetrievalEngine",
    "build_embedder",
    "index_extraction",
    "receipt_document_text",
]
