"""
Common contract for AI backend adapters.

Every adapter speaks its vendor's REST API directly over httpx (no vendor
SDKs) and exposes the same two operations:

- generate_text(messages, system_prompt) -> GenerationResult
- stream_text(messages, system_prompt)   -> async iterator of text deltas

Failures of any kind (transport, HTTP status, malformed body) surface as
ProviderError so the router can treat them uniformly.
"""
import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from app.core.logging import get_logger
from app.services.ai.schema import ChatMessage, GenerationResult, ProviderConfig

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_TOKENS = 4096


class ProviderError(Exception):
    """Raised when a backend call fails."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.status_code = status_code


class AIProvider(ABC):
    """
    One loaded backend.

    Subclasses set ``kind`` (the ProviderConfig.name they serve), their
    vendor defaults and ``is_local`` for runtimes that never leave the
    deployment network. Local runtimes do not require a credential.
    """

    kind: str = ""
    is_local: bool = False
    default_base_url: str = ""
    default_model: str = ""

    def __init__(
        self,
        config: ProviderConfig,
        api_key: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not self.is_local and not api_key:
            raise ProviderError(self.kind, "API key not configured")
        self.config = config
        self.api_key = api_key
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self.model = config.model_name or self.default_model
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def name(self) -> str:
        """The backend kind this adapter was loaded as."""
        return self.config.name or self.kind

    @property
    def custom_instructions(self) -> Optional[str]:
        return self.config.custom_instructions

    @abstractmethod
    async def generate_text(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
    ) -> GenerationResult:
        ...

    @abstractmethod
    def stream_text(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Lazy, single-consumption sequence of text deltas."""

    async def test_connection(self) -> bool:
        """Issue a trivial generation; True when it succeeds."""
        try:
            await self.generate_text([ChatMessage(role="user", content="test")], "respond with ok")
            return True
        except Exception as e:
            logger.warning(
                "provider_health_check_failed",
                provider=self.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    async def _post_json(self, url: str, headers: Dict[str, str], payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("provider_timeout", provider=self.name, error=str(exc))
            raise ProviderError(self.name, "Request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "provider_http_error",
                provider=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ProviderError(self.name, f"Request failed: {type(exc).__name__}") from exc

        if response.status_code >= 400:
            logger.warning("provider_bad_status", provider=self.name, status_code=response.status_code)
            raise ProviderError(self.name, f"HTTP {response.status_code}", status_code=response.status_code)

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(self.name, "Response body is not valid JSON") from exc

    async def _stream_lines(
        self,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
    ) -> AsyncIterator[str]:
        try:
            async with self._client() as client:
                async with client.stream("POST", url, headers=headers, json=payload) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        logger.warning(
                            "provider_bad_status",
                            provider=self.name,
                            status_code=response.status_code,
                            streaming=True,
                        )
                        raise ProviderError(
                            self.name,
                            f"HTTP {response.status_code}",
                            status_code=response.status_code,
                        )
                    async for line in response.aiter_lines():
                        if line.strip():
                            yield line
        except httpx.HTTPError as exc:
            logger.warning(
                "provider_stream_error",
                provider=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ProviderError(self.name, f"Stream failed: {type(exc).__name__}") from exc

    async def _sse_events(
        self,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
    ) -> AsyncIterator[Dict[str, Any]]:
        """Decode ``data:`` lines of a server-sent event stream as JSON."""
        async for line in self._stream_lines(url, headers, payload):
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                return
            try:
                yield json.loads(data)
            except ValueError as exc:
                raise ProviderError(self.name, "Malformed stream event") from exc


def split_system_messages(
    messages: List[ChatMessage],
    system_prompt: Optional[str],
) -> Tuple[Optional[str], List[ChatMessage]]:
    """
    Fold any system-role messages into one system prompt.

    For vendors that take the system prompt as a separate field rather than
    as a message.
    """
    system_parts = [system_prompt] if system_prompt else []
    system_parts.extend(m.content for m in messages if m.role == "system")
    conversation = [m for m in messages if m.role != "system"]
    return ("\n\n".join(system_parts) or None), conversation
