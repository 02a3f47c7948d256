"""
AI backend adapters.

PROVIDER_CLASSES maps a ProviderConfig.name (the backend kind) to its
adapter. Adding a backend means adding a class here; the router never
changes.
"""
from typing import Dict, Type

from .anthropic import AnthropicProvider
from .base import AIProvider, ProviderError
from .cohere import CohereProvider
from .gemini import GeminiProvider
from .ollama import OllamaProvider
from .openai_compatible import (
    GroqProvider,
    LocalLLMProvider,
    MistralProvider,
    OpenAICompatibleProvider,
    OpenRouterProvider,
    PerplexityProvider,
)

PROVIDER_CLASSES: Dict[str, Type[AIProvider]] = {
    cls.kind: cls
    for cls in (
        OpenAICompatibleProvider,
        AnthropicProvider,
        GeminiProvider,
        MistralProvider,
        CohereProvider,
        GroqProvider,
        PerplexityProvider,
        OpenRouterProvider,
        OllamaProvider,
        LocalLLMProvider,
    )
}

__all__ = [
    "AIProvider",
    "ProviderError",
    "PROVIDER_CLASSES",
    "AnthropicProvider",
    "CohereProvider",
    "GeminiProvider",
    "GroqProvider",
    "LocalLLMProvider",
    "MistralProvider",
    "OllamaProvider",
    "OpenAICompatibleProvider",
    "OpenRouterProvider",
    "PerplexityProvider",
]
