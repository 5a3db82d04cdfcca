"""Knowledge Retrieval Module"""
from .embeddings import EmbeddingService
from .index import KnowledgeIndex, InMemoryKnowledgeIndex, SupabaseKnowledgeIndex, cosine_similarity
from .retrieval import RetrievalEngine, pack_context, estimate_tokens, EMPTY_CONTEXT

__all__ = [
    "EmbeddingService", "KnowledgeIndex", "InMemoryKnowledgeIndex", "SupabaseKnowledgeIndex",
    "cosine_similarity", "RetrievalEngine", "pack_context", "estimate_tokens", "EMPTY_CONTEXT",
]
