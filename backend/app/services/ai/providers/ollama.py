"""
Ollama adapter (local runtime).

Uses the native ``/api/chat`` endpoint; streaming responses are
newline-delimited JSON objects rather than server-sent events.
"""
import json
from typing import Any, AsyncIterator, Dict, List, Optional

from app.services.ai.providers.base import AIProvider, ProviderError
from app.services.ai.schema import ChatMessage, GenerationResult, TokenUsage


class OllamaProvider(AIProvider):
    kind = "ollama"
    is_local = True
    default_base_url = "http://localhost:11434"
    default_model = "llama3"

    @property
    def chat_url(self) -> str:
        # Accept base URLs configured with or without the /api suffix
        base = self.base_url[:-len("/api")] if self.base_url.endswith("/api") else self.base_url
        return f"{base}/api/chat"

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
            self.chat_url,
            {"Content-Type": "application/json"},
            self._payload(messages, system_prompt, stream=False),
        )
        message = data.get("message")
        if not isinstance(message, dict):
            raise ProviderError(self.name, "Response has no message")

        prompt_tokens = int(data.get("prompt_eval_count") or 0)
        completion_tokens = int(data.get("eval_count") or 0)
        return GenerationResult(
            text=message.get("content") or "",
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
        lines = self._stream_lines(
            self.chat_url,
            {"Content-Type": "application/json"},
            self._payload(messages, system_prompt, stream=True),
        )
        async for line in lines:
            try:
                chunk = json.loads(line)
            except ValueError as exc:
                raise ProviderError(self.name, "Malformed stream chunk") from exc
            if chunk.get("error"):
                raise ProviderError(self.name, "Stream reported an error")
            text = (chunk.get("message") or {}).get("content")
            if text:
                yield text
            if chunk.get("done"):
                return
