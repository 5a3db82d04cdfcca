# --------------------------- tests/unit/test_retrieval.py ----------------------------
"""
Quote Intake · Knowledge Retrieval Tests

Scoped search, the empty-context sentinel, token-budget packing, embedding
cache behavior and knowledge-base maintenance.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from quote_intake.errors import ExternalDependencyError, NotFoundError, ValidationError
from quote_intake.models import KnowledgeDocument, KnowledgeScope, ProviderKnowledge, SearchResult
from quote_intake.services.knowledge import (
    EMPTY_CONTEXT, EmbeddingService, InMemoryKnowledgeIndex, RetrievalEngine, cosine_similarity, estimate_tokens,
    pack_context,
)
from quote_intake.services.knowledge.retrieval import TRUNCATION_MARKER
from quote_intake.services.rate_limiter import RateLimiter, RateLimiterConfig

VECTORS = {
    "anodizado": [1.0, 0.0, 0.0],
    "anodizado tipo II para aluminio": [0.95, 0.05, 0.0],
    "temple de aceros": [0.0, 1.0, 0.0],
    "tolerancias ISO 2768": [0.0, 0.0, 1.0],
}


def fake_embeddings():
    backend = Mock()
    backend.aembed_query = AsyncMock(side_effect=lambda text: VECTORS.get(text, [0.3, 0.3, 0.3]))
    backend.aembed_documents = AsyncMock(side_effect=lambda texts: [VECTORS.get(t, [0.3, 0.3, 0.3]) for t in texts])
    return backend


@pytest.fixture
def embedding_service():
    limiter = RateLimiter(RateLimiterConfig(name="llm", max_concurrent=2))
    return EmbeddingService(limiter, embeddings=fake_embeddings(), dimensions=3)


@pytest.fixture
def engine(embedding_service):
    return RetrievalEngine(embedding_service, InMemoryKnowledgeIndex())


def result(content: str, similarity: float = 0.9) -> SearchResult:
    return SearchResult(document=KnowledgeDocument(agent_type="providers", category="services", content=content),
                        similarity=similarity)


# ===============================================================================
# PACKING
# ===============================================================================

class TestContextPacking:
    """Greedy packing into a token budget."""

    def test_no_results_returns_sentinel(self):
        context, included, tokens = pack_context([], max_tokens=500)

        assert context == EMPTY_CONTEXT
        assert included == []
        assert tokens == estimate_tokens(EMPTY_CONTEXT)

    def test_packed_context_never_exceeds_budget(self):
        results = [result("x" * 300), result("y" * 300), result("z" * 300)]

        for budget in (50, 100, 180, 250, 1000):
            context, included, tokens = pack_context(results, max_tokens=budget)
            assert tokens <= budget
            assert estimate_tokens(context) == tokens

    def test_first_document_is_truncated_to_fit(self):
        context, included, _ = pack_context([result("a" * 2000)], max_tokens=100)

        assert context.endswith(TRUNCATION_MARKER)
        assert len(included) == 1

    def test_overflowing_later_document_is_dropped_whole(self):
        context, included, _ = pack_context([result("short one"), result("b" * 2000)], max_tokens=100)

        assert len(included) == 1
        assert "b" * 10 not in context
        assert TRUNCATION_MARKER not in context


# ===============================================================================
# RETRIEVAL
# ===============================================================================

class TestRetrievalEngine:
    """Scoped search through the engine."""

    @pytest.mark.asyncio
    async def test_retrieve_filters_by_scope_and_threshold(self, engine):
        await engine.add_document("providers", "services", "anodizado tipo II para aluminio",
                                  metadata=ProviderKnowledge(provider_name="Anodizados Madrid"))
        await engine.add_document("engineering", "capabilities", "anodizado")
        await engine.add_document("providers", "services", "temple de aceros")

        context = await engine.retrieve("anodizado", KnowledgeScope("providers", "services"))

        assert not context.is_empty
        assert [r.document.content for r in context.documents] == ["anodizado tipo II para aluminio"]
        assert "Category: services" in context.formatted_context

    @pytest.mark.asyncio
    async def test_nothing_above_threshold_is_empty_not_error(self, engine):
        await engine.add_document("providers", "services", "temple de aceros")

        context = await engine.retrieve("anodizado", KnowledgeScope("providers"))

        assert context.is_empty
        assert context.formatted_context == EMPTY_CONTEXT
        assert context.token_count <= estimate_tokens(EMPTY_CONTEXT)

    @pytest.mark.asyncio
    async def test_invalid_parameters_are_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.retrieve("   ")
        with pytest.raises(ValidationError):
            await engine.retrieve("anodizado", max_tokens=10)
        with pytest.raises(ValidationError):
            await engine.retrieve("anodizado", threshold=1.5)

    def test_cosine_similarity(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0


class TestKnowledgeMaintenance:
    """Add, update, delete and stats."""

    @pytest.mark.asyncio
    async def test_content_update_reembeds_and_bumps_version(self, engine):
        document = await engine.add_document("providers", "services", "anodizado")

        updated = await engine.update_document(document.id, content="temple de aceros")

        assert updated.version == 2
        assert updated.embedding == VECTORS["temple de aceros"]

    @pytest.mark.asyncio
    async def test_verified_document_rejects_content_change(self, engine):
        document = await engine.add_document("engineering", "capabilities", "tolerancias ISO 2768", verified=True)

        with pytest.raises(ValidationError):
            await engine.update_document(document.id, content="otra cosa")
        updated = await engine.update_document(document.id, importance_score=2.0)
        assert updated.importance_score == 2.0

    @pytest.mark.asyncio
    async def test_unknown_document_raises_not_found(self, engine):
        with pytest.raises(NotFoundError):
            await engine.update_document("missing", content="x")

    @pytest.mark.asyncio
    async def test_stats_and_delete(self, engine):
        first = await engine.add_document("providers", "services", "anodizado", verified=True)
        await engine.add_document("providers", "materials", "temple de aceros")

        assert engine.stats()["providers"] == {"total": 2, "verified": 1,
                                               "by_category": {"services": 1, "materials": 1}}
        assert engine.delete_document(first.id) is True
        assert engine.delete_document(first.id) is False


class TestEmbeddingService:
    """Caching, batching and dimension checks."""

    @pytest.mark.asyncio
    async def test_identical_text_is_embedded_once(self, embedding_service):
        await embedding_service.embed("anodizado")
        await embedding_service.embed("anodizado")

        assert embedding_service.embeddings.aembed_query.await_count == 1

    @pytest.mark.asyncio
    async def test_embed_many_skips_cached_texts(self, embedding_service):
        await embedding_service.embed("anodizado")

        vectors = await embedding_service.embed_many(["anodizado", "temple de aceros"])

        assert vectors == [VECTORS["anodizado"], VECTORS["temple de aceros"]]
        embedding_service.embeddings.aembed_documents.assert_awaited_once_with(["temple de aceros"])

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_an_external_error(self):
        limiter = RateLimiter(RateLimiterConfig(name="llm"))
        service = EmbeddingService(limiter, embeddings=fake_embeddings(), dimensions=1536)

        with pytest.raises(ExternalDependencyError):
            await service.embed("anodizado")
