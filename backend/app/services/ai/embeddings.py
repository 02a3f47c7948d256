"""
Embedding generation for knowledge retrieval.

Two interchangeable generators:
- HttpEmbeddingGenerator: OpenAI-compatible ``/embeddings`` endpoint over httpx
- SentenceTransformerEmbeddingGenerator: on-host model, nothing leaves the box

Batches larger than EMBEDDING_BATCH_SIZE are split into several calls to
stay under backend batch limits.

Environment configuration:
- EMBEDDING_BACKEND: "openai" (default) or "local"
- EMBEDDING_API_BASE: default https://api.openai.com/v1
- EMBEDDING_API_KEY: bearer token for the HTTP backend
- EMBEDDING_MODEL: default text-embedding-3-small
- LOCAL_EMBEDDING_MODEL: default all-MiniLM-L6-v2
"""
import asyncio
import os
import time
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
from sentence_transformers import SentenceTransformer

from app.core.logging import get_logger

logger = get_logger(__name__)

EMBEDDING_BATCH_SIZE = 100
DEFAULT_HTTP_MODEL = "text-embedding-3-small"
DEFAULT_LOCAL_MODEL = "all-MiniLM-L6-v2"


class EmbeddingError(Exception):
    """Raised when an embedding backend fails or returns a malformed body."""


class EmbeddingGenerator(ABC):
    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        vectors: List[List[float]] = []
        for start in range(0, len(texts), EMBEDDING_BATCH_SIZE):
            batch = texts[start:start + EMBEDDING_BATCH_SIZE]
            vectors.extend(await self._embed_many(batch))
        return vectors

    @abstractmethod
    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        """Embed at most EMBEDDING_BATCH_SIZE texts in one backend call."""


class HttpEmbeddingGenerator(EmbeddingGenerator):
    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        model: str = DEFAULT_HTTP_MODEL,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        if not self.api_key:
            raise EmbeddingError("Embedding API key not configured")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        payload = {"model": self.model, "input": texts}

        start = time.time()
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(f"{self.api_base}/embeddings", headers=headers, json=payload)
            response.raise_for_status()
            data = response.json()["data"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc

        # OpenAI returns items with an explicit index; keep input order.
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        if len(ordered) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(ordered)}")

        logger.debug(
            "embeddings_generated",
            backend="http",
            model=self.model,
            count=len(texts),
            latency_ms=int((time.time() - start) * 1000),
        )
        return [item["embedding"] for item in ordered]


class SentenceTransformerEmbeddingGenerator(EmbeddingGenerator):
    """Local embeddings; the model is loaded lazily on first use."""

    def __init__(self, model_name: str = DEFAULT_LOCAL_MODEL):
        self.model_name = model_name
        self._model: Optional[SentenceTransformer] = None

    def _load_model(self) -> SentenceTransformer:
        if self._model is None:
            start = time.time()
            self._model = SentenceTransformer(self.model_name)
            logger.info(
                "local_embedding_model_loaded",
                model_name=self.model_name,
                load_time_ms=int((time.time() - start) * 1000),
            )
        return self._model

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        def encode() -> List[List[float]]:
            model = self._load_model()
            array = model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
            return array.tolist()

        try:
            return await asyncio.to_thread(encode)
        except Exception as exc:
            raise EmbeddingError(f"Local embedding failed: {exc}") from exc


def create_embedding_generator() -> EmbeddingGenerator:
    backend = os.getenv("EMBEDDING_BACKEND", "openai").lower()
    if backend == "local":
        return SentenceTransformerEmbeddingGenerator(
            model_name=os.getenv("LOCAL_EMBEDDING_MODEL", DEFAULT_LOCAL_MODEL),
        )
    return HttpEmbeddingGenerator(
        api_base=os.getenv("EMBEDDING_API_BASE", "https://api.openai.com/v1"),
        api_key=os.getenv("EMBEDDING_API_KEY"),
        model=os.getenv("EMBEDDING_MODEL", DEFAULT_HTTP_MODEL),
    )
