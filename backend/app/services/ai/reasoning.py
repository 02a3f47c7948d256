"""
Reasoning orchestrator.

Pipeline for one request:
    retrieve knowledge -> compose system prompt -> append history + user
    message -> route to a provider -> collect provenance -> decision log

Provenance tags are ``Layer1:<doc_type>`` for institutional chunks,
``Layer2:<doc_type>`` for subject chunks and ``Layer3:personality`` when
personality directives were part of the prompt.
"""
from typing import List, Optional

from app.core.logging import get_logger
from app.core.tracing import start_span
from app.services.ai.audit import DecisionLogger
from app.services.ai.engine import ProviderRegistry
from app.services.ai.prompt_composer import compose_system_prompt
from app.services.ai.schema import (
    ChatMessage,
    DecisionLog,
    EngineSettings,
    KnowledgeChunk,
    KnowledgeScope,
    ReasoningResult,
    Sensitivity,
)
from app.services.ai.vector_search import KnowledgeRetriever
from app.services.storage.base import RecordStore

logger = get_logger(__name__)

DEFAULT_ACTION_TYPE = "chat_response"
PERSONALITY_LAYER = "Layer3:personality"


def authority_layers(knowledge: List[KnowledgeChunk], settings: EngineSettings) -> List[str]:
    """Deduplicated, order-preserving provenance tags."""
    layers: List[str] = []
    for chunk in knowledge:
        prefix = "Layer1" if chunk.doc_scope == KnowledgeScope.GLOBAL else "Layer2"
        tag = f"{prefix}:{chunk.doc_type}"
        if tag not in layers:
            layers.append(tag)
    if settings.personality_config is not None:
        layers.append(PERSONALITY_LAYER)
    return layers


class ReasoningOrchestrator:
    def __init__(
        self,
        retriever: KnowledgeRetriever,
        registry: ProviderRegistry,
        record_store: RecordStore,
        decision_logger: DecisionLogger,
    ):
        self.retriever = retriever
        self.registry = registry
        self.record_store = record_store
        self.decision_logger = decision_logger

    async def execute(
        self,
        user_message: str,
        subject_id: Optional[str] = None,
        history: Optional[List[ChatMessage]] = None,
        action_type: Optional[str] = None,
        triggered_by: Optional[str] = None,
        sensitivity: Sensitivity = Sensitivity.MEDIUM,
        extra_context: Optional[str] = None,
    ) -> ReasoningResult:
        """
        Answer ``user_message`` grounded in the knowledge base.

        Retrieval failures degrade to an empty context; decision log
        failures are swallowed. Provider failures (after the router's single
        fallback) propagate.
        """
        action_type = action_type or DEFAULT_ACTION_TYPE

        with start_span(
            "ai.reasoning.execute",
            **{"ai.action_type": action_type, "ai.subject_id": subject_id},
        ) as span:
            settings = await self.record_store.get_engine_settings()
            knowledge = await self.retriever.retrieve(user_message, subject_id)
            system_prompt = compose_system_prompt(knowledge, settings, extra_context)

            messages = list(history or [])
            messages.append(ChatMessage(role="user", content=user_message))

            result = await self.registry.run(
                messages,
                system_prompt=system_prompt,
                sensitivity=sensitivity,
                task_type=action_type,
                settings=settings,
            )

            source_chunk_ids = [chunk.id for chunk in knowledge]
            layers = authority_layers(knowledge, settings)
            token_count = result.usage.total_tokens
            model_used = result.model or result.provider
            span.set_attribute("ai.knowledge.chunks", len(source_chunk_ids))
            span.set_attribute("ai.tokens", token_count)

        await self.decision_logger.record(DecisionLog(
            action_type=action_type,
            input_summary=user_message,
            output_summary=result.text,
            full_response=result.text,
            reasoning_context=system_prompt,
            source_chunk_ids=source_chunk_ids,
            authority_layers_used=layers,
            subject_id=subject_id,
            triggered_by=triggered_by,
            is_autonomous=triggered_by is None,
            model_used=model_used,
            token_count=token_count,
        ))

        logger.info(
            "reasoning_completed",
            action_type=action_type,
            subject_id=subject_id,
            provider=result.provider,
            chunks_used=len(source_chunk_ids),
            authority_layers=layers,
            token_count=token_count,
        )

        return ReasoningResult(
            response=result.text,
            source_chunk_ids=source_chunk_ids,
            authority_layers_used=layers,
            token_count=token_count,
            model_used=model_used,
        )

    async def analyze_submission(
        self,
        content: str,
        subject_id: str,
        context: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> ReasoningResult:
        prompt = f"Analyze this submission and provide a detailed assessment:\n\n{content}"
        if context:
            prompt += f"\n\nAdditional context: {context}"
        return await self.execute(
            prompt,
            subject_id=subject_id,
            action_type="submission_review",
            triggered_by=triggered_by,
        )

    async def analyze_document(
        self,
        content: str,
        subject_id: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> ReasoningResult:
        return await self.execute(
            f"Analyze this document and provide a comprehensive summary with key findings:\n\n{content}",
            subject_id=subject_id,
            action_type="document_analysis",
            triggered_by=triggered_by,
        )

    async def preview_prompt(self, sample_query: Optional[str] = None, subject_id: Optional[str] = None) -> str:
        """The system prompt a request would get, without calling a model."""
        settings = await self.record_store.get_engine_settings()
        knowledge: List[KnowledgeChunk] = []
        if sample_query:
            knowledge = await self.retriever.retrieve(sample_query, subject_id)
        return compose_system_prompt(knowledge, settings)
