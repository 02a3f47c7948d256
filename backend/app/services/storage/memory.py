"""
Process-local stores for development and tests.

The knowledge store keeps normalized embeddings in memory and ranks with a
numpy dot product (cosine similarity on unit vectors), mirroring what the
pgvector ``match_document_chunks`` function does server-side.
"""
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from app.services.ai.schema import (
    DecisionLog,
    EngineSettings,
    KnowledgeChunk,
    ProviderConfig,
    SearchFilters,
    WarningRecord,
)
from app.services.storage.base import KnowledgeStore, RecordStore, StorageError


def _normalize(vector: Sequence[float]) -> np.ndarray:
    array = np.asarray(vector, dtype="float32")
    norm = np.linalg.norm(array)
    if norm == 0:
        raise StorageError("Cannot index a zero-length embedding")
    return array / norm


class InMemoryKnowledgeStore(KnowledgeStore):
    def __init__(self):
        self._entries: Dict[str, Tuple[KnowledgeChunk, np.ndarray]] = {}

    async def upsert(self, chunk: KnowledgeChunk, embedding: Sequence[float]) -> None:
        self._entries[chunk.id] = (chunk.model_copy(update={"similarity": None}), _normalize(embedding))

    async def query(
        self,
        embedding: Sequence[float],
        k: int,
        filters: SearchFilters,
        similarity_threshold: float,
    ) -> List[KnowledgeChunk]:
        if not self._entries:
            return []

        query_vector = _normalize(embedding)
        scored: List[KnowledgeChunk] = []
        for chunk, vector in self._entries.values():
            if filters.scope is not None and chunk.doc_scope != filters.scope:
                continue
            if filters.subject_id is not None and chunk.subject_id != filters.subject_id:
                continue
            if filters.doc_type is not None and chunk.doc_type != filters.doc_type:
                continue
            if vector.shape != query_vector.shape:
                raise StorageError(
                    f"Embedding dimension mismatch: index {vector.shape[0]}, query {query_vector.shape[0]}"
                )
            similarity = float(np.dot(vector, query_vector))
            if similarity < similarity_threshold:
                continue
            scored.append(chunk.model_copy(update={"similarity": similarity}))

        scored.sort(key=lambda c: c.similarity, reverse=True)
        return scored[:k]

    async def delete_document(self, document_id: str) -> int:
        doomed = [cid for cid, (chunk, _) in self._entries.items() if chunk.document_id == document_id]
        for cid in doomed:
            del self._entries[cid]
        return len(doomed)


class InMemoryRecordStore(RecordStore):
    def __init__(
        self,
        providers: Optional[List[ProviderConfig]] = None,
        settings: Optional[EngineSettings] = None,
        points: Optional[Dict[str, int]] = None,
    ):
        self.providers: List[ProviderConfig] = list(providers or [])
        self.settings = settings or EngineSettings()
        self.points: Dict[str, int] = dict(points or {})
        self.decision_logs: List[DecisionLog] = []
        self.warnings: List[WarningRecord] = []

    async def list_enabled_providers(self) -> List[ProviderConfig]:
        enabled = [p for p in self.providers if p.is_enabled]
        return sorted(enabled, key=lambda p: p.priority)

    async def get_provider(self, provider_id: str) -> Optional[ProviderConfig]:
        return next((p for p in self.providers if p.id == provider_id), None)

    async def get_engine_settings(self) -> EngineSettings:
        return self.settings

    async def update_engine_settings(self, settings: EngineSettings) -> EngineSettings:
        self.settings = settings
        return settings

    async def insert_decision_log(self, log: DecisionLog) -> str:
        stored = log.model_copy(update={"id": str(uuid.uuid4())})
        self.decision_logs.append(stored)
        return stored.id

    async def list_decision_logs(
        self,
        action_type: Optional[str] = None,
        subject_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[DecisionLog], int]:
        matching = [
            log for log in self.decision_logs
            if (action_type is None or log.action_type == action_type)
            and (subject_id is None or log.subject_id == subject_id)
        ]
        newest_first = sorted(matching, key=lambda log: log.created_at)[::-1]
        start = (page - 1) * limit
        return newest_first[start:start + limit], len(matching)

    async def count_active_warnings(self, subject_id: str) -> int:
        return sum(1 for w in self.warnings if w.subject_id == subject_id and w.status == "active")

    async def insert_warning(self, warning: WarningRecord) -> WarningRecord:
        stored = warning.model_copy(update={"id": str(uuid.uuid4())})
        self.warnings.append(stored)
        return stored

    async def delete_warning(self, warning_id: str) -> None:
        self.warnings = [w for w in self.warnings if w.id != warning_id]

    async def list_warnings(self, subject_id: str) -> List[WarningRecord]:
        mine = [w for w in self.warnings if w.subject_id == subject_id]
        # ascending then reversed so equal timestamps keep newest-insert first
        return sorted(mine, key=lambda w: w.created_at)[::-1]

    async def get_points(self, subject_id: str) -> Optional[int]:
        return self.points.get(subject_id)

    async def set_points(self, subject_id: str, points: int) -> None:
        self.points[subject_id] = points
