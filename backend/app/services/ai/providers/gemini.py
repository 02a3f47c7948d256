"""Google Gemini (Generative Language API) adapter."""
from typing import Any, AsyncIterator, Dict, List, Optional

from app.services.ai.providers.base import AIProvider, ProviderError, split_system_messages
from app.services.ai.schema import ChatMessage, GenerationResult, TokenUsage


class GeminiProvider(AIProvider):
    kind = "google"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_model = "gemini-1.5-pro"

    def _headers(self) -> Dict[str, str]:
        # key travels in a header, never in the URL
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key or ""}

    def _payload(self, messages: List[ChatMessage], system_prompt: Optional[str]) -> Dict[str, Any]:
        system, conversation = split_system_messages(messages, system_prompt)
        payload: Dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in conversation
            ],
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    def _candidate_text(self, data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError(self.name, "Response has no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    async def generate_text(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
    ) -> GenerationResult:
        data = await self._post_json(
            f"{self.base_url}/models/{self.model}:generateContent",
            self._headers(),
            self._payload(messages, system_prompt),
        )
        text = self._candidate_text(data)
        usage = data.get("usageMetadata") or {}
        return GenerationResult(
            text=text,
            usage=TokenUsage(
                prompt_tokens=int(usage.get("promptTokenCount") or 0),
                completion_tokens=int(usage.get("candidatesTokenCount") or 0),
                total_tokens=int(usage.get("totalTokenCount") or 0),
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
            f"{self.base_url}/models/{self.model}:streamGenerateContent?alt=sse",
            self._headers(),
            self._payload(messages, system_prompt),
        )
        async for event in events:
            if not event.get("candidates"):
                continue
            text = self._candidate_text(event)
            if text:
                yield text
