"""Cohere Chat (v2) adapter."""
from typing import Any, AsyncIterator, Dict, List, Optional

from app.services.ai.providers.base import AIProvider, ProviderError
from app.services.ai.schema import ChatMessage, GenerationResult, TokenUsage


class CohereProvider(AIProvider):
    kind = "cohere"
    default_base_url = "https://api.cohere.com/v2"
    default_model = "command-r-plus"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _payload(self, messages: List[ChatMessage], system_prompt: Optional[str], stream: bool) -> Dict[str, Any]:
        wire = []
        if system_prompt:
            wire.append({"role": "system", "content": system_prompt})
        wire.extend(m.model_dump() for m in messages)
        return {"model": self.model, "messages": wire, "stream": stream}

    async def generate_text(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
    ) -> GenerationResult:
        data = await self._post_json(
            f"{self.base_url}/chat",
            self._headers(),
            self._payload(messages, system_prompt, stream=False),
        )
        content = (data.get("message") or {}).get("content")
        if not isinstance(content, list):
            raise ProviderError(self.name, "Response has no message content")

        text = "".join(item.get("text", "") for item in content if item.get("type") == "text")
        tokens = (data.get("usage") or {}).get("tokens") or {}
        prompt_tokens = int(tokens.get("input_tokens") or 0)
        completion_tokens = int(tokens.get("output_tokens") or 0)
        return GenerationResult(
            text=text,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            provider=self.name,
            model=self.model,
        )

    async def stream_text(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[str]:
        events = self._sse_events(
            f"{self.base_url}/chat",
            self._headers(),
            self._payload(messages, system_prompt, stream=True),
        )
        async for event in events:
            event_type = event.get("type")
            if event_type == "message-end":
                return
            if event_type == "content-delta":
                text = (((event.get("delta") or {}).get("message") or {}).get("content") or {}).get("text")
                if text:
                    yield text
