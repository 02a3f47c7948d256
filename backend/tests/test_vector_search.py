"""
Unit tests for knowledge retrieval and the in-memory knowledge store.
"""
import pytest

from app.services.ai.schema import KnowledgeScope, SearchFilters
from app.services.ai.vector_search import KnowledgeRetriever, authority_order
from app.services.storage import InMemoryKnowledgeStore, StorageError

from conftest import FakeEmbedder, embedding_for, index_chunk, make_chunk


def test_authority_dominates_similarity():
    """Test a level-1 chunk outranks a more similar level-2 chunk."""
    chunks = [
        make_chunk("a", authority=2, similarity=0.99),
        make_chunk("b", authority=1, similarity=0.41),
        make_chunk("c", authority=1, similarity=0.90),
    ]
    assert [c.id for c in authority_order(chunks)] == ["c", "b", "a"]


@pytest.mark.asyncio
async def test_store_filters_by_scope_subject_and_threshold():
    """Test query applies filters and the similarity threshold."""
    store = InMemoryKnowledgeStore()
    await index_chunk(store, make_chunk("g1"), 0.9)
    await index_chunk(store, make_chunk("g2"), 0.2)
    await index_chunk(store, make_chunk("s1", scope="subject", subject_id="intern-1"), 0.9)
    await index_chunk(store, make_chunk("s2", scope="subject", subject_id="intern-2"), 0.9)

    globals_ = await store.query(
        [1.0, 0.0, 0.0], k=10, filters=SearchFilters(scope=KnowledgeScope.GLOBAL), similarity_threshold=0.4
    )
    assert [c.id for c in globals_] == ["g1"]
    assert globals_[0].similarity == pytest.approx(0.9, abs=1e-5)

    mine = await store.query(
        [1.0, 0.0, 0.0],
        k=10,
        filters=SearchFilters(scope=KnowledgeScope.SUBJECT, subject_id="intern-1"),
        similarity_threshold=0.4,
    )
    assert [c.id for c in mine] == ["s1"]


@pytest.mark.asyncio
async def test_store_returns_top_k_by_similarity():
    """Test results are limited to k, most similar first."""
    store = InMemoryKnowledgeStore()
    for i, similarity in enumerate([0.5, 0.95, 0.7, 0.8]):
        await index_chunk(store, make_chunk(f"c{i}"), similarity)

    results = await store.query([1.0, 0.0, 0.0], k=2, filters=SearchFilters(), similarity_threshold=0.0)
    assert [c.id for c in results] == ["c1", "c3"]


@pytest.mark.asyncio
async def test_store_delete_document_removes_all_chunks():
    """Test deleting a document removes every chunk of it."""
    store = InMemoryKnowledgeStore()
    await index_chunk(store, make_chunk("a", document_id="handbook"), 0.9)
    await index_chunk(store, make_chunk("b", document_id="handbook"), 0.9)
    await index_chunk(store, make_chunk("c", document_id="other"), 0.9)

    assert await store.delete_document("handbook") == 2
    remaining = await store.query([1.0, 0.0, 0.0], k=10, filters=SearchFilters(), similarity_threshold=0.0)
    assert [c.id for c in remaining] == ["c"]


@pytest.mark.asyncio
async def test_store_rejects_dimension_mismatch():
    """Test a query with the wrong embedding size raises StorageError."""
    store = InMemoryKnowledgeStore()
    await index_chunk(store, make_chunk("a"), 0.9)
    with pytest.raises(StorageError):
        await store.query([1.0, 0.0], k=5, filters=SearchFilters(), similarity_threshold=0.0)


@pytest.mark.asyncio
async def test_retrieve_global_only_without_subject():
    """Test subject knowledge is not searched when no subject is given."""
    store = InMemoryKnowledgeStore()
    await index_chunk(store, make_chunk("g1"), 0.9)
    await index_chunk(store, make_chunk("s1", scope="subject", subject_id="intern-1"), 0.9)

    retriever = KnowledgeRetriever(store, FakeEmbedder())
    results = await retriever.retrieve("late submission policy")
    assert [c.id for c in results] == ["g1"]


@pytest.mark.asyncio
async def test_retrieve_merges_scopes_in_authority_order():
    """Test merged results are ordered by authority then similarity."""
    store = InMemoryKnowledgeStore()
    await index_chunk(store, make_chunk("g-low", authority=2), 0.95)
    await index_chunk(store, make_chunk("g-high", authority=1), 0.5)
    await index_chunk(store, make_chunk("s1", scope="subject", subject_id="intern-1", authority=1), 0.8)

    retriever = KnowledgeRetriever(store, FakeEmbedder())
    results = await retriever.retrieve("deadline", subject_id="intern-1")
    assert [c.id for c in results] == ["s1", "g-high", "g-low"]


@pytest.mark.asyncio
async def test_subject_threshold_is_stricter_than_global():
    """Test a 0.42 match surfaces globally but not for a subject."""
    store = InMemoryKnowledgeStore()
    await index_chunk(store, make_chunk("g1"), 0.42)
    await index_chunk(store, make_chunk("s1", scope="subject", subject_id="intern-1"), 0.42)

    retriever = KnowledgeRetriever(store, FakeEmbedder())
    assert [c.id for c in await retriever.search_global("rules")] == ["g1"]
    assert await retriever.search_subject("rules", "intern-1") == []


@pytest.mark.asyncio
async def test_global_search_limit():
    """Test global search returns at most 8 chunks by default."""
    store = InMemoryKnowledgeStore()
    for i in range(12):
        await store.upsert(make_chunk(f"c{i}"), embedding_for(0.9))

    retriever = KnowledgeRetriever(store, FakeEmbedder())
    assert len(await retriever.search_global("anything")) == 8


@pytest.mark.asyncio
async def test_embedding_failure_degrades_to_empty():
    """Test an embedding outage yields no knowledge instead of an error."""
    store = InMemoryKnowledgeStore()
    await index_chunk(store, make_chunk("g1"), 0.9)

    retriever = KnowledgeRetriever(store, FakeEmbedder(fail=True))
    assert await retriever.retrieve("anything", subject_id="intern-1") == []


@pytest.mark.asyncio
async def test_store_failure_degrades_to_empty():
    """Test a store outage yields no knowledge instead of an error."""

    class BrokenStore(InMemoryKnowledgeStore):
        async def query(self, embedding, k, filters, similarity_threshold):
            raise StorageError("database unavailable")

    retriever = KnowledgeRetriever(BrokenStore(), FakeEmbedder())
    assert await retriever.search_global("anything") == []


@pytest.mark.asyncio
async def test_blank_query_returns_empty():
    """Test a blank query never reaches the embedder."""
    embedder = FakeEmbedder()
    retriever = KnowledgeRetriever(InMemoryKnowledgeStore(), embedder)
    assert await retriever.search("   ") == []
    assert embedder.batches == []
