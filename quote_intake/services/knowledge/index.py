# --------------------------- quote_intake/services/knowledge/index.py ----------------------------
"""
Knowledge document index: cosine search in memory, pgvector search on Supabase.
"""

import logging
import os
from math import sqrt
from typing import Dict, List, Optional, Sequence

from dotenv import load_dotenv
from supabase import create_client, Client

from quote_intake.errors import PersistenceError
from quote_intake.models import KnowledgeDocument, KnowledgeScope, SearchResult

load_dotenv()

logger = logging.getLogger(__name__)

KNOWLEDGE_TABLE = "knowledge_embeddings"
SEARCH_FUNCTION = "search_knowledge"


class KnowledgeIndex:
    """Storage and similarity search for knowledge documents."""

    def add(self, document: KnowledgeDocument) -> KnowledgeDocument:
        raise NotImplementedError

    def get(self, document_id: str) -> Optional[KnowledgeDocument]:
        raise NotImplementedError

    def update(self, document: KnowledgeDocument) -> KnowledgeDocument:
        raise NotImplementedError

    def delete(self, document_id: str) -> bool:
        raise NotImplementedError

    def search(self, vector: Sequence[float], scope: KnowledgeScope, threshold: float,
               limit: int) -> List[SearchResult]:
        raise NotImplementedError

    def documents(self, scope: Optional[KnowledgeScope] = None) -> List[KnowledgeDocument]:
        raise NotImplementedError


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = sqrt(sum(a * a for a in vec_a))
    norm_b = sqrt(sum(b * b for b in vec_b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryKnowledgeIndex(KnowledgeIndex):
    """Brute-force cosine index, fine for a few thousand documents."""

    def __init__(self):
        self._documents: Dict[str, KnowledgeDocument] = {}

    def add(self, document: KnowledgeDocument) -> KnowledgeDocument:
        self._documents[document.id] = KnowledgeDocument.from_record(document.to_record())
        return document

    def get(self, document_id: str) -> Optional[KnowledgeDocument]:
        document = self._documents.get(document_id)
        return KnowledgeDocument.from_record(document.to_record()) if document else None

    def update(self, document: KnowledgeDocument) -> KnowledgeDocument:
        if document.id not in self._documents:
            raise PersistenceError(KNOWLEDGE_TABLE, "update", f"unknown id {document.id}")
        return self.add(document)

    def delete(self, document_id: str) -> bool:
        return self._documents.pop(document_id, None) is not None

    def search(self, vector: Sequence[float], scope: KnowledgeScope, threshold: float,
               limit: int) -> List[SearchResult]:
        scored = []
        for document in self._documents.values():
            if not scope.matches(document):
                continue
            score = cosine_similarity(vector, document.embedding)
            if score >= threshold:
                scored.append(SearchResult(document=document, similarity=score))
        scored.sort(key=lambda r: (r.similarity, r.document.importance_score), reverse=True)
        return scored[:limit]

    def documents(self, scope: Optional[KnowledgeScope] = None) -> List[KnowledgeDocument]:
        scope = scope or KnowledgeScope()
        return [d for d in self._documents.values() if scope.matches(d)]


class SupabaseKnowledgeIndex(KnowledgeIndex):
    """
    ``knowledge_embeddings`` table plus the ``search_knowledge`` SQL function
    (pgvector cosine distance filtered by agent type and category).
    """

    def __init__(self, client: Optional[Client] = None):
        if client is None:
            url = os.getenv("SUPABASE_URL")
            key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            if not url or not key:
                raise PersistenceError("supabase", "connect", "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
            client = create_client(url, key)
        self.supabase = client

    def _execute(self, operation: str, query) -> List[dict]:
        try:
            return query.execute().data or []
        except Exception as e:
            logger.error(f"{operation} on {KNOWLEDGE_TABLE} failed: {e}")
            raise PersistenceError(KNOWLEDGE_TABLE, operation, str(e))

    def add(self, document: KnowledgeDocument) -> KnowledgeDocument:
        rows = self._execute("insert", self.supabase.table(KNOWLEDGE_TABLE).insert(document.to_record()))
        return KnowledgeDocument.from_record(rows[0]) if rows else document

    def get(self, document_id: str) -> Optional[KnowledgeDocument]:
        rows = self._execute("select", self.supabase.table(KNOWLEDGE_TABLE).select("*").eq("id", document_id).limit(1))
        return KnowledgeDocument.from_record(rows[0]) if rows else None

    def update(self, document: KnowledgeDocument) -> KnowledgeDocument:
        record = document.to_record()
        record.pop("id")
        rows = self._execute("update", self.supabase.table(KNOWLEDGE_TABLE).update(record).eq("id", document.id))
        return KnowledgeDocument.from_record(rows[0]) if rows else document

    def delete(self, document_id: str) -> bool:
        rows = self._execute("delete", self.supabase.table(KNOWLEDGE_TABLE).delete().eq("id", document_id))
        return bool(rows)

    def search(self, vector: Sequence[float], scope: KnowledgeScope, threshold: float,
               limit: int) -> List[SearchResult]:
        rows = self._execute("rpc", self.supabase.rpc(SEARCH_FUNCTION, {
            "query_embedding": list(vector),
            "agent_filter": scope.agent_type,
            "category_filter": scope.category,
            "match_threshold": threshold,
            "match_count": limit,
        }))
        return [
            SearchResult(document=KnowledgeDocument.from_record(row), similarity=float(row.get("similarity") or 0.0))
            for row in rows
        ]

    def documents(self, scope: Optional[KnowledgeScope] = None) -> List[KnowledgeDocument]:
        query = self.supabase.table(KNOWLEDGE_TABLE).select("id, agent_type, category, content, verified, importance_score")
        if scope and scope.agent_type:
            query = query.eq("agent_type", scope.agent_type)
        if scope and scope.category:
            query = query.eq("category", scope.category)
        return [KnowledgeDocument.from_record(row) for row in self._execute("select", query)]
