"""
Narrow persistence interfaces used by the reasoning core.

KnowledgeStore is the read side of the (external) ingestion pipeline's
vector index. RecordStore is the relational side: provider configs, engine
settings, decision logs, warnings and subject point balances.

Implementations raise StorageError for any backend failure so callers can
decide whether to degrade (retrieval, audit) or surface (warnings).
"""
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from app.services.ai.schema import (
    DecisionLog,
    EngineSettings,
    KnowledgeChunk,
    ProviderConfig,
    SearchFilters,
    WarningRecord,
)


class StorageError(Exception):
    """Raised when a store operation fails."""


class KnowledgeStore(ABC):
    @abstractmethod
    async def upsert(self, chunk: KnowledgeChunk, embedding: Sequence[float]) -> None:
        ...

    @abstractmethod
    async def query(
        self,
        embedding: Sequence[float],
        k: int,
        filters: SearchFilters,
        similarity_threshold: float,
    ) -> List[KnowledgeChunk]:
        """
        Top-k chunks by cosine similarity, highest first.

        Only chunks matching the scope / subject / doc_type filters and
        scoring at least ``similarity_threshold`` are returned, each with
        ``similarity`` populated.
        """

    @abstractmethod
    async def delete_document(self, document_id: str) -> int:
        """Remove every chunk of a parent document; returns chunks removed."""


class RecordStore(ABC):
    # Providers & settings
    @abstractmethod
    async def list_enabled_providers(self) -> List[ProviderConfig]:
        """Enabled provider rows ordered by ascending priority."""

    @abstractmethod
    async def get_provider(self, provider_id: str) -> Optional[ProviderConfig]:
        ...

    @abstractmethod
    async def get_engine_settings(self) -> EngineSettings:
        ...

    @abstractmethod
    async def update_engine_settings(self, settings: EngineSettings) -> EngineSettings:
        ...

    # Audit
    @abstractmethod
    async def insert_decision_log(self, log: DecisionLog) -> str:
        """Append a decision log and return its id."""

    @abstractmethod
    async def list_decision_logs(
        self,
        action_type: Optional[str] = None,
        subject_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[DecisionLog], int]:
        """One page of decision logs, newest first, and the total matching count."""

    # Warnings
    @abstractmethod
    async def count_active_warnings(self, subject_id: str) -> int:
        ...

    @abstractmethod
    async def insert_warning(self, warning: WarningRecord) -> WarningRecord:
        ...

    @abstractmethod
    async def delete_warning(self, warning_id: str) -> None:
        ...

    @abstractmethod
    async def list_warnings(self, subject_id: str) -> List[WarningRecord]:
        """All warnings for a subject, newest first."""

    # Subject profile
    @abstractmethod
    async def get_points(self, subject_id: str) -> Optional[int]:
        """Current point balance, or None when the subject has no profile."""

    @abstractmethod
    async def set_points(self, subject_id: str, points: int) -> None:
        ...
