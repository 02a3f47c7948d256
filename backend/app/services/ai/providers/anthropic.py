"""Anthropic Messages API adapter."""
from typing import Any, AsyncIterator, Dict, List, Optional

from app.services.ai.providers.base import (
    DEFAULT_MAX_TOKENS,
    AIProvider,
    ProviderError,
    split_system_messages,
)
from app.services.ai.schema import ChatMessage, GenerationResult, TokenUsage

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(AIProvider):
    kind = "anthropic"
    default_base_url = "https://api.anthropic.com/v1"
    default_model = "claude-3-5-sonnet-20240620"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _payload(self, messages: List[ChatMessage], system_prompt: Optional[str], stream: bool) -> Dict[str, Any]:
        system, conversation = split_system_messages(messages, system_prompt)
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.config.settings.get("max_tokens", DEFAULT_MAX_TOKENS),
            "messages": [m.model_dump() for m in conversation],
            "stream": stream,
        }
        if system:
            payload["system"] = system
        return payload

    async def generate_text(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
    ) -> GenerationResult:
        data = await self._post_json(
            f"{self.base_url}/messages",
            self._headers(),
            self._payload(messages, system_prompt, stream=False),
        )
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderError(self.name, "Response has no content blocks")

        text = "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("input_tokens") or 0)
        completion_tokens = int(usage.get("output_tokens") or 0)
        return GenerationResult(
            text=text,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            provider=self.name,
            model=data.get("model") or self.model,
        )

    async def stream_text(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[str]:
        events = self._sse_events(
            f"{self.base_url}/messages",
            self._headers(),
            self._payload(messages, system_prompt, stream=True),
        )
        async for event in events:
            event_type = event.get("type")
            if event_type == "error":
                raise ProviderError(self.name, "Stream reported an error event")
            if event_type == "message_stop":
                return
            if event_type == "content_block_delta":
                text = (event.get("delta") or {}).get("text")
                if text:
                    yield text
