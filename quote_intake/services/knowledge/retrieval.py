# --------------------------- quote_intake/services/knowledge/retrieval.py ----------------------------
"""
Quote Intake · Knowledge Retrieval Engine

OVERVIEW:
Retrieval-augmented context for the agents. Given a query and a knowledge
scope, returns the relevant documents packed into a prompt-ready text block
that never exceeds the requested token budget.

WORKFLOW:
1. Embed the query (exact-text cache first)
2. Scoped similarity search over the index
3. Similarity threshold
4. Greedy packing into the token budget (≈4 chars per token)
5. Empty result: explicit sentinel context, never an error

BUSINESS LOGIC:
- The first document may be truncated to fit; later documents are either
  included whole or dropped, so no half-sentences reach the prompt
- Verified documents are frozen: their content cannot change
- Content updates re-embed the document and bump its version
"""

import logging
import math
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from quote_intake.config import settings
from quote_intake.errors import NotFoundError, ValidationError
from quote_intake.models import (
    KnowledgeDocument, KnowledgeMetadata, KnowledgeNote, KnowledgeScope, RetrievalContext,
    SearchResult, utcnow,
)
from quote_intake.services.knowledge.embeddings import EmbeddingService
from quote_intake.services.knowledge.index import KnowledgeIndex

logger = logging.getLogger(__name__)

EMPTY_CONTEXT = "No relevant information found in the knowledge base."
CONTEXT_HEADER = "RELEVANT KNOWLEDGE BASE INFORMATION:\n\n"
SECTION_SEPARATOR = "\n---\n\n"
TRUNCATION_MARKER = "\n[... truncated]"
MIN_MAX_TOKENS = 50


def estimate_tokens(text: str, chars_per_token: int = settings.CHARS_PER_TOKEN) -> int:
    return math.ceil(len(text) / chars_per_token)


def _format_section(position: int, result: SearchResult) -> str:
    document = result.document
    lines = [
        f"Document {position} (relevance: {round(result.similarity * 100)}%)",
        f"Category: {document.category}",
        document.content,
    ]
    return "\n".join(lines) + "\n"


def pack_context(results: List[SearchResult], max_tokens: int,
                 chars_per_token: int = settings.CHARS_PER_TOKEN) -> Tuple[str, List[SearchResult], int]:
    """
    Greedily pack search results into a token budget.

    RETURNS:
        (formatted_context, included_results, token_count); token_count is
        measured on the full formatted context and never exceeds max_tokens
    """
    if not results:
        return EMPTY_CONTEXT, [], estimate_tokens(EMPTY_CONTEXT, chars_per_token)

    max_chars = max_tokens * chars_per_token
    context = CONTEXT_HEADER
    included: List[SearchResult] = []

    for position, result in enumerate(results, start=1):
        section = _format_section(position, result)
        candidate = context + (SECTION_SEPARATOR if included else "") + section
        if len(candidate) <= max_chars:
            context = candidate
            included.append(result)
            continue
        if not included:
            available = max_chars - len(context) - len(TRUNCATION_MARKER)
            context = context + section[:max(available, 0)] + TRUNCATION_MARKER
            included.append(result)
        break

    return context, included, estimate_tokens(context, chars_per_token)


class RetrievalEngine:
    """
    Scoped semantic retrieval plus knowledge-base maintenance.

    KEY METHODS:
    - retrieve(): token-budgeted context for a query
    - add_document() / update_document() / delete_document(): maintenance
    - stats(): document counts per agent type and category
    """

    def __init__(self, embeddings: EmbeddingService, index: KnowledgeIndex):
        self.embeddings = embeddings
        self.index = index

    async def retrieve(self, query: str, scope: Optional[KnowledgeScope] = None,
                       max_results: int = settings.RAG_MATCH_COUNT,
                       threshold: float = settings.RAG_MATCH_THRESHOLD,
                       max_tokens: int = settings.RAG_MAX_TOKENS) -> RetrievalContext:
        """
        ARGS:
            query: free text to search for
            scope: (agent type, category) filter; None searches everything
            max_results: maximum number of documents searched
            threshold: minimum cosine similarity
            max_tokens: budget for the formatted context

        RAISES:
            ValidationError: empty query or out-of-range parameters
            ExternalDependencyError: the query could not be embedded
            PersistenceError: the index search failed
        """
        if not query or not query.strip():
            raise ValidationError("query cannot be empty", field="query")
        if max_results < 1:
            raise ValidationError("max_results must be at least 1", field="max_results")
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be between 0 and 1", field="threshold")
        if max_tokens < MIN_MAX_TOKENS:
            raise ValidationError(f"max_tokens must be at least {MIN_MAX_TOKENS}", field="max_tokens")

        scope = scope or KnowledgeScope()
        started = time.monotonic()

        vector = await self.embeddings.embed(query)
        results = [r for r in self.index.search(vector, scope, threshold, max_results) if r.similarity >= threshold]
        formatted, included, token_count = pack_context(results, max_tokens)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Knowledge context for {scope.agent_type or 'any'}/{scope.category or 'any'}: "
            f"{len(included)} docs, ~{token_count} tokens, {elapsed_ms}ms"
        )
        return RetrievalContext(
            query=query,
            scope=scope,
            documents=included,
            formatted_context=formatted,
            token_count=token_count,
            retrieval_time_ms=elapsed_ms,
            is_empty=not included,
        )

    # ── maintenance ───────────────────────────────────────────────────────

    async def add_document(self, agent_type: str, category: str, content: str,
                           metadata: Optional[KnowledgeMetadata] = None,
                           importance_score: float = 1.0, verified: bool = False) -> KnowledgeDocument:
        document = KnowledgeDocument(
            agent_type=agent_type,
            category=category,
            content=content,
            embedding=await self.embeddings.embed(content),
            metadata=metadata or KnowledgeNote(),
            importance_score=importance_score,
            verified=verified,
        )
        stored = self.index.add(document)
        logger.info(f"Knowledge added: {agent_type}/{category} ({stored.id})")
        return stored

    async def update_document(self, document_id: str, content: Optional[str] = None,
                              **changes: Any) -> KnowledgeDocument:
        """
        Update a document; new content is re-embedded.

        RAISES:
            NotFoundError: unknown document id
            ValidationError: content change on a verified document, or unknown field
        """
        document = self.index.get(document_id)
        if document is None:
            raise NotFoundError("knowledge_document", document_id)

        allowed = {"category", "metadata", "importance_score", "verified"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"cannot update {', '.join(sorted(unknown))}", field=sorted(unknown)[0])

        if content is not None and content != document.content:
            if document.verified:
                raise ValidationError("verified documents are immutable", field="content")
            document.embedding = await self.embeddings.embed(content)
            document.content = content
            document.version += 1

        for name, value in changes.items():
            if value is not None:
                setattr(document, name, value)
        document.updated_at = utcnow()
        return self.index.update(document)

    def delete_document(self, document_id: str) -> bool:
        deleted = self.index.delete(document_id)
        if deleted:
            logger.info(f"Knowledge deleted: {document_id}")
        return deleted

    def stats(self) -> Dict[str, Dict[str, Any]]:
        stats: Dict[str, Dict[str, Any]] = {}
        for document in self.index.documents():
            entry = stats.setdefault(document.agent_type, {"total": 0, "verified": 0, "by_category": defaultdict(int)})
            entry["total"] += 1
            entry["by_category"][document.category] += 1
            if document.verified:
                entry["verified"] += 1
        for entry in stats.values():
            entry["by_category"] = dict(entry["by_category"])
        return stats
