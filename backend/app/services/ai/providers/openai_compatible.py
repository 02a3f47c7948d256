"""
Adapters for vendors exposing the OpenAI ``/chat/completions`` API.

OpenAI itself, Groq, Mistral, Perplexity, OpenRouter, and local servers
such as LM Studio or llama.cpp (``local-llm``).
"""
from typing import Any, AsyncIterator, Dict, List, Optional

from app.services.ai.providers.base import AIProvider, ProviderError
from app.services.ai.schema import ChatMessage, GenerationResult, TokenUsage


class OpenAICompatibleProvider(AIProvider):
    kind = "openai"
    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-4o-mini"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

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
            f"{self.base_url}/chat/completions",
            self._headers(),
            self._payload(messages, system_prompt, stream=False),
        )
        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(self.name, "Response has no completion choices") from exc

        usage = data.get("usage") or {}
        return GenerationResult(
            text=text,
            usage=TokenUsage(
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
                total_tokens=int(usage.get("total_tokens") or 0),
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
            f"{self.base_url}/chat/completions",
            self._headers(),
            self._payload(messages, system_prompt, stream=True),
        )
        async for event in events:
            choices = event.get("choices") or []
            if not choices:
                continue
            delta = (choices[0].get("delta") or {}).get("content")
            if delta:
                yield delta


class GroqProvider(OpenAICompatibleProvider):
    kind = "groq"
    default_base_url = "https://api.groq.com/openai/v1"
    default_model = "llama3-8b-8192"


class MistralProvider(OpenAICompatibleProvider):
    kind = "mistral"
    default_base_url = "https://api.mistral.ai/v1"
    default_model = "mistral-large-latest"


class PerplexityProvider(OpenAICompatibleProvider):
    kind = "perplexity"
    default_base_url = "https://api.perplexity.ai"
    default_model = "llama-3-sonar-large-32k-online"


class OpenRouterProvider(OpenAICompatibleProvider):
    kind = "openrouter"
    default_base_url = "https://openrouter.ai/api/v1"
    default_model = "anthropic/claude-3.5-sonnet"


class LocalLLMProvider(OpenAICompatibleProvider):
    """LM Studio / llama.cpp server on the local network."""

    kind = "local-llm"
    is_local = True
    default_base_url = "http://localhost:1234/v1"
    default_model = "local-model"
