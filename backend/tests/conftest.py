"""
Shared fixtures for the reasoning core tests.

Providers are scripted through ``ProviderConfig.settings``:
- reply: text returned by generate_text (a list is consumed one per call)
- fail: raise ProviderError from generate_text
- deltas: chunks yielded by stream_text
- fail_stream: raise ProviderError before the first delta
- delay: seconds to sleep before answering
- tokens: total_tokens reported
"""
import asyncio
import math
from typing import List, Optional

import pytest

from app.services.ai.container import ReasoningCore
from app.services.ai.embeddings import EmbeddingError, EmbeddingGenerator
from app.services.ai.encryption import SecretStore
from app.services.ai.engine import ProviderRegistry
from app.services.ai.providers import AIProvider, ProviderError
from app.services.ai.schema import (
    GenerationResult,
    KnowledgeChunk,
    KnowledgeScope,
    ProviderConfig,
    TokenUsage,
)
from app.services.storage import InMemoryKnowledgeStore, InMemoryRecordStore


class ScriptedProvider(AIProvider):
    kind = "scripted"
    default_model = "scripted-model"

    def __init__(self, config, api_key=None, timeout_seconds=60.0, transport=None):
        super().__init__(config, api_key=api_key or "unused", timeout_seconds=timeout_seconds, transport=transport)
        self.calls = []
        reply = config.settings.get("reply")
        self._replies = list(reply) if isinstance(reply, list) else None

    def _next_reply(self) -> str:
        if self._replies is not None:
            return self._replies.pop(0)
        return self.config.settings.get("reply", "ok")

    async def generate_text(self, messages, system_prompt=None):
        script = self.config.settings
        self.calls.append({"messages": list(messages), "system_prompt": system_prompt})
        if script.get("delay"):
            await asyncio.sleep(script["delay"])
        if script.get("fail"):
            raise ProviderError(self.name, "scripted failure")
        tokens = script.get("tokens", 10)
        return GenerationResult(
            text=self._next_reply(),
            usage=TokenUsage(prompt_tokens=tokens // 2, completion_tokens=tokens - tokens // 2, total_tokens=tokens),
            model=self.model,
        )

    async def stream_text(self, messages, system_prompt=None):
        script = self.config.settings
        self.calls.append({"messages": list(messages), "system_prompt": system_prompt})
        if script.get("delay"):
            await asyncio.sleep(script["delay"])
        if script.get("fail_stream"):
            raise ProviderError(self.name, "scripted stream failure")
        for delta in script.get("deltas", ["Hel", "lo"]):
            yield delta


class ScriptedLocalProvider(ScriptedProvider):
    kind = "scripted-local"
    is_local = True


FAKE_CLASSES = {
    "openai": ScriptedProvider,
    "anthropic": ScriptedProvider,
    "groq": ScriptedProvider,
    "ollama": ScriptedLocalProvider,
    "local-llm": ScriptedLocalProvider,
}


class FakeEmbedder(EmbeddingGenerator):
    """Embeds every text as the same unit vector."""

    def __init__(self, vector: Optional[List[float]] = None, fail: bool = False):
        self.vector = vector or [1.0, 0.0, 0.0]
        self.fail = fail
        self.batches: List[int] = []

    async def _embed_many(self, texts):
        self.batches.append(len(texts))
        if self.fail:
            raise EmbeddingError("embedding backend down")
        return [list(self.vector) for _ in texts]


def make_config(name: str, priority: int = 100, provider_id: Optional[str] = None, **script) -> ProviderConfig:
    return ProviderConfig(
        id=provider_id or f"{name}-id",
        name=name,
        priority=priority,
        model_name=f"{name}-model",
        settings=script,
    )


def make_chunk(
    chunk_id: str,
    scope: str = "global",
    doc_type: str = "policy",
    authority: int = 1,
    subject_id: Optional[str] = None,
    content: Optional[str] = None,
    similarity: Optional[float] = None,
    document_id: Optional[str] = None,
) -> KnowledgeChunk:
    return KnowledgeChunk(
        id=chunk_id,
        document_id=document_id or f"doc-{chunk_id}",
        content=content or f"content of {chunk_id}",
        doc_scope=KnowledgeScope(scope),
        doc_type=doc_type,
        authority_level=authority,
        subject_id=subject_id,
        similarity=similarity,
    )


def embedding_for(similarity: float) -> List[float]:
    """A unit vector whose cosine with FakeEmbedder's default is ``similarity``."""
    return [similarity, math.sqrt(max(0.0, 1.0 - similarity ** 2)), 0.0]


async def index_chunk(store: InMemoryKnowledgeStore, chunk: KnowledgeChunk, similarity: float) -> None:
    await store.upsert(chunk, embedding_for(similarity))


@pytest.fixture
def secret_store():
    return SecretStore("test-secret")


@pytest.fixture
def make_registry(secret_store):
    """Build a registry over an in-memory record store holding ``configs``."""

    def _make(*configs, settings=None, strict_privacy=False, record_store=None, timeout_seconds=60.0):
        store = record_store or InMemoryRecordStore(providers=list(configs), settings=settings)
        return ProviderRegistry(
            store,
            secret_store,
            strict_privacy=strict_privacy,
            timeout_seconds=timeout_seconds,
            provider_classes=FAKE_CLASSES,
        )

    return _make


@pytest.fixture
def make_core(secret_store):
    """Build a ReasoningCore on in-memory stores and scripted providers."""

    def _make(providers=(), settings=None, points=None, embedder=None, record_store=None):
        record_store = record_store or InMemoryRecordStore(
            providers=list(providers),
            settings=settings,
            points=points,
        )
        registry = ProviderRegistry(record_store, secret_store, provider_classes=FAKE_CLASSES)
        return ReasoningCore(
            InMemoryKnowledgeStore(),
            record_store,
            embedder or FakeEmbedder(),
            secret_store,
            registry=registry,
        )

    return _make
