"""Semantic retrieval store and embedding backends."""

from zox.retrieval.embeddings import CloudEmbeddingProvider, LocalEmbeddingProvider
from zox.retrieval.store import ContextChunk, SemanticStore, cosine_similarity

__all__ = [
    "CloudEmbeddingProvider",
    "ContextChunk",
    "LocalEmbeddingProvider",
    "SemanticStore",
    "cosine_similarity",
]
