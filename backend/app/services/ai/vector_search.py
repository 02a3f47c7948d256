"""
Knowledge retrieval over the vector-indexed knowledge store.

Two scopes:
- global: institution-wide documents (plans, agreements, Q&A), searched
  with a low similarity threshold so rules surface on loose phrasing
- subject: documents attached to one subject, searched only when a subject
  id is supplied

Results are merged and ordered by (authority_level asc, similarity desc):
authority always dominates similarity.

Failures of the embedding backend or the store degrade to an empty result
list; reasoning continues with reduced context.
"""
import time
from typing import List, Optional

from app.core.logging import get_logger
from app.core.metrics import record_knowledge_search
from app.core.tracing import start_span
from app.services.ai.embeddings import EmbeddingGenerator
from app.services.ai.schema import KnowledgeChunk, KnowledgeScope, SearchFilters
from app.services.storage.base import KnowledgeStore

logger = get_logger(__name__)

GLOBAL_SEARCH_LIMIT = 8
GLOBAL_SIMILARITY_THRESHOLD = 0.40
SUBJECT_SEARCH_LIMIT = 5
SUBJECT_SIMILARITY_THRESHOLD = 0.45


def authority_order(chunks: List[KnowledgeChunk]) -> List[KnowledgeChunk]:
    """Sort by authority level (1 first), then by similarity (highest first)."""
    return sorted(chunks, key=lambda c: (c.authority_level, -(c.similarity or 0.0)))


class KnowledgeRetriever:
    def __init__(self, store: KnowledgeStore, embedder: EmbeddingGenerator):
        self.store = store
        self.embedder = embedder

    async def search(self, query: str, filters: Optional[SearchFilters] = None) -> List[KnowledgeChunk]:
        """
        Embed ``query`` and return the top matches for ``filters``.

        Never raises: any embedding or store failure is logged and yields [].
        """
        filters = filters or SearchFilters()
        scope_label = filters.scope.value if filters.scope else "any"

        if not query or not query.strip():
            logger.warning("knowledge_search_empty_query", scope=scope_label)
            return []

        start = time.time()
        try:
            embedding = await self.embedder.embed(query)
            results = await self.store.query(
                embedding,
                k=filters.limit,
                filters=filters,
                similarity_threshold=filters.threshold,
            )
        except Exception as e:
            record_knowledge_search(scope_label, degraded=True, duration_seconds=time.time() - start)
            logger.warning(
                "knowledge_search_failed",
                scope=scope_label,
                subject_id=filters.subject_id,
                error=str(e),
                error_type=type(e).__name__,
                message="Continuing with reduced context",
            )
            return []

        record_knowledge_search(scope_label, degraded=False, duration_seconds=time.time() - start)
        logger.debug(
            "knowledge_search_completed",
            scope=scope_label,
            subject_id=filters.subject_id,
            results_count=len(results),
        )
        return results

    async def search_global(self, query: str, limit: int = GLOBAL_SEARCH_LIMIT) -> List[KnowledgeChunk]:
        return await self.search(
            query,
            SearchFilters(
                scope=KnowledgeScope.GLOBAL,
                limit=limit,
                threshold=GLOBAL_SIMILARITY_THRESHOLD,
            ),
        )

    async def search_subject(
        self,
        query: str,
        subject_id: str,
        limit: int = SUBJECT_SEARCH_LIMIT,
    ) -> List[KnowledgeChunk]:
        return await self.search(
            query,
            SearchFilters(
                scope=KnowledgeScope.SUBJECT,
                subject_id=subject_id,
                limit=limit,
                threshold=SUBJECT_SIMILARITY_THRESHOLD,
            ),
        )

    async def retrieve(self, query: str, subject_id: Optional[str] = None) -> List[KnowledgeChunk]:
        """Global knowledge always, subject knowledge when a subject is given."""
        with start_span("ai.knowledge.retrieve", subject_id=subject_id) as span:
            results = list(await self.search_global(query))
            if subject_id:
                results.extend(await self.search_subject(query, subject_id))
            span.set_attribute("ai.knowledge.chunks", len(results))
        return authority_order(results)
