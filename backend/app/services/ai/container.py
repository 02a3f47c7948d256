"""
Wiring for the reasoning core.

ReasoningCore owns one ProviderRegistry and hands it, together with the
stores, to the orchestrator, enforcement engine, course generator and
settings service. The FastAPI app builds exactly one at startup; tests
build their own with in-memory stores and fake providers.
"""
from typing import List, Optional

from app.core.database import get_supabase_client
from app.core.logging import get_logger
from app.services.ai.audit import DecisionLogger
from app.services.ai.course_generator import CourseGenerator
from app.services.ai.embeddings import EmbeddingGenerator, create_embedding_generator
from app.services.ai.encryption import SecretStore
from app.services.ai.enforcement import EnforcementEngine
from app.services.ai.engine import ProviderRegistry
from app.services.ai.reasoning import ReasoningOrchestrator
from app.services.ai.schema import (
    ChatMessage,
    ReasoningResult,
    ViolationCheck,
    WarningRecord,
)
from app.services.ai.settings import SettingsService
from app.services.ai.vector_search import KnowledgeRetriever
from app.services.storage import InMemoryKnowledgeStore, InMemoryRecordStore
from app.services.storage.base import KnowledgeStore, RecordStore
from app.services.storage.supabase_store import SupabaseKnowledgeStore, SupabaseRecordStore

logger = get_logger(__name__)


class ReasoningCore:
    def __init__(
        self,
        knowledge_store: KnowledgeStore,
        record_store: RecordStore,
        embedder: EmbeddingGenerator,
        secret_store: SecretStore,
        registry: Optional[ProviderRegistry] = None,
    ):
        self.knowledge_store = knowledge_store
        self.record_store = record_store
        self.secret_store = secret_store
        self.retriever = KnowledgeRetriever(knowledge_store, embedder)
        self.registry = registry or ProviderRegistry.from_env(record_store, secret_store)
        self.decision_logger = DecisionLogger(record_store)

        self.orchestrator = ReasoningOrchestrator(self.retriever, self.registry, record_store, self.decision_logger)
        self.enforcement = EnforcementEngine(self.retriever, self.registry, record_store, self.decision_logger)
        self.courses = CourseGenerator(self.retriever, self.registry, self.decision_logger)
        self.settings = SettingsService(record_store, self.decision_logger)

    @classmethod
    def from_env(cls) -> "ReasoningCore":
        """
        Build from environment configuration.

        A missing encryption secret raises ConfigurationError and aborts
        startup. Without Supabase credentials the in-memory stores are used.
        """
        secret_store = SecretStore.from_env()
        client = get_supabase_client()
        if client is not None:
            knowledge_store: KnowledgeStore = SupabaseKnowledgeStore(client)
            record_store: RecordStore = SupabaseRecordStore(client)
            logger.info("reasoning_core_stores", backend="supabase")
        else:
            knowledge_store = InMemoryKnowledgeStore()
            record_store = InMemoryRecordStore()
            logger.warning(
                "reasoning_core_stores",
                backend="memory",
                message="Supabase not configured; data will not persist",
            )
        return cls(knowledge_store, record_store, create_embedding_generator(), secret_store)

    async def reason(
        self,
        query: str,
        subject_id: Optional[str] = None,
        history: Optional[List[ChatMessage]] = None,
        triggered_by: Optional[str] = None,
    ) -> ReasoningResult:
        return await self.orchestrator.execute(
            query,
            subject_id=subject_id,
            history=history,
            triggered_by=triggered_by,
        )

    async def check_violation(
        self,
        description: str,
        subject_id: str,
        context: Optional[str] = None,
    ) -> ViolationCheck:
        return await self.enforcement.check_for_violations(description, subject_id, context)

    async def issue_warning(
        self,
        subject_id: str,
        violation: ViolationCheck,
        issued_by: Optional[str] = None,
        is_autonomous: bool = False,
    ) -> Optional[WarningRecord]:
        return await self.enforcement.issue_warning(subject_id, violation, issued_by, is_autonomous)

    async def preview_prompt(self, sample_query: Optional[str] = None) -> str:
        return await self.orchestrator.preview_prompt(sample_query)

    async def delete_document(self, document_id: str) -> int:
        removed = await self.knowledge_store.delete_document(document_id)
        logger.info("knowledge_document_deleted", document_id=document_id, chunks_removed=removed)
        return removed
