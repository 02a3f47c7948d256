"""
Provider registry and router.

The registry loads every enabled ProviderConfig (ascending priority),
decrypts its credential and builds one adapter per backend kind. Requests
are routed by a fixed policy, first match wins:

1. privacy mode on, or sensitivity HIGH -> first local provider
2. configured default provider, if loaded
3. first loaded provider (lowest priority number)

When step 1 finds no local provider the request falls through to 2/3,
logged and counted as a privacy fallthrough; with AI_STRICT_PRIVACY=true it
raises NoProvidersAvailableError instead.

``run`` retries exactly once on a different provider after a failure. Under
HIGH sensitivity the fallback must also be local.
"""
import asyncio
import os
import time
from typing import AsyncIterator, Dict, List, Optional, Tuple, Type

import httpx

from app.core.logging import get_logger
from app.core.metrics import (
    record_privacy_fallthrough,
    record_provider_fallback,
    record_provider_request,
)
from app.core.tracing import start_span
from app.services.ai.encryption import DecryptionError, SecretStore
from app.services.ai.providers import PROVIDER_CLASSES, AIProvider, ProviderError
from app.services.ai.providers.base import DEFAULT_TIMEOUT_SECONDS
from app.services.ai.schema import (
    ChatMessage,
    EngineSettings,
    GenerationResult,
    ProviderConfig,
    ProviderSummary,
    ProviderTestResult,
    Sensitivity,
)
from app.services.storage.base import RecordStore

logger = get_logger(__name__)

CONNECTION_TEST_PROMPT = "Connection test. Respond with exactly the word SUCCESS."
CONNECTION_TEST_SYSTEM_PROMPT = "You are a connection tester."


class NoProvidersAvailableError(Exception):
    """Raised when no loaded provider can serve a request."""


def combine_system_prompt(provider: AIProvider, system_prompt: Optional[str]) -> Optional[str]:
    """Per-provider custom instructions go ahead of the composed prompt."""
    parts = [part for part in (provider.custom_instructions, system_prompt) if part]
    return "\n\n".join(parts) or None


class ProviderRegistry:
    def __init__(
        self,
        record_store: RecordStore,
        secret_store: SecretStore,
        strict_privacy: bool = False,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        provider_classes: Optional[Dict[str, Type[AIProvider]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.record_store = record_store
        self.secret_store = secret_store
        self.strict_privacy = strict_privacy
        self.timeout_seconds = timeout_seconds
        self.provider_classes = provider_classes if provider_classes is not None else PROVIDER_CLASSES
        self._transport = transport

        self._providers: Dict[str, AIProvider] = {}
        self._initialized = False
        self._init_task: Optional[asyncio.Task] = None

    @classmethod
    def from_env(cls, record_store: RecordStore, secret_store: SecretStore) -> "ProviderRegistry":
        return cls(
            record_store,
            secret_store,
            strict_privacy=os.getenv("AI_STRICT_PRIVACY", "false").lower() == "true",
            timeout_seconds=float(
                os.getenv("AI_PROVIDER_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)) or DEFAULT_TIMEOUT_SECONDS
            ),
        )

    @property
    def providers(self) -> Dict[str, AIProvider]:
        """Loaded adapters keyed by kind, in priority order."""
        return dict(self._providers)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Load providers once.

        Concurrent callers share the same in-flight load. A failed load is
        not remembered, so the next call retries.
        """
        if self._initialized:
            return

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._load())
        task = self._init_task

        try:
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def reload(self) -> None:
        """Drop loaded adapters and load again (after operator changes)."""
        if self._init_task is not None and not self._init_task.done():
            await asyncio.shield(self._init_task)
        self._initialized = False
        self._init_task = None
        await self.initialize()

    async def _load(self) -> None:
        start = time.time()
        try:
            configs = await self.record_store.list_enabled_providers()
        except Exception as e:
            logger.error(
                "provider_registry_load_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        loaded: Dict[str, AIProvider] = {}
        for config in configs:
            provider = await self._build_provider(config, already_loaded=loaded)
            if provider is not None:
                loaded[config.name] = provider

        self._providers = loaded
        self._initialized = True
        logger.info(
            "provider_registry_initialized",
            providers=list(loaded),
            local_providers=[name for name, p in loaded.items() if p.is_local],
            skipped=len(configs) - len(loaded),
            load_time_ms=int((time.time() - start) * 1000),
        )

    async def _build_provider(
        self,
        config: ProviderConfig,
        already_loaded: Dict[str, AIProvider],
    ) -> Optional[AIProvider]:
        provider_class = self.provider_classes.get(config.name)
        if provider_class is None:
            logger.warning("provider_kind_unknown", provider=config.name, provider_id=config.id)
            return None
        if config.name in already_loaded:
            logger.warning("provider_kind_duplicate", provider=config.name, provider_id=config.id)
            return None

        try:
            api_key = None
            if config.api_key_encrypted:
                api_key = await asyncio.to_thread(self.secret_store.decrypt, config.api_key_encrypted)
            return provider_class(
                config,
                api_key=api_key,
                timeout_seconds=self.timeout_seconds,
                transport=self._transport,
            )
        except Exception as e:
            logger.error(
                "provider_load_failed",
                provider=config.name,
                provider_id=config.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def get_provider(self, name: str) -> Optional[AIProvider]:
        await self.initialize()
        return self._providers.get(name)

    async def get_best_provider(
        self,
        sensitivity: Sensitivity = Sensitivity.MEDIUM,
        settings: Optional[EngineSettings] = None,
    ) -> AIProvider:
        await self.initialize()
        if not self._providers:
            raise NoProvidersAvailableError("No AI providers available")

        if settings is None:
            settings = await self.record_store.get_engine_settings()
        candidates = list(self._providers.values())

        if settings.privacy_mode_enabled or sensitivity == Sensitivity.HIGH:
            local = next((p for p in candidates if p.is_local), None)
            if local is not None:
                return local
            if self.strict_privacy:
                raise NoProvidersAvailableError("No local AI provider available for a privacy-restricted request")
            record_privacy_fallthrough()
            logger.warning(
                "privacy_routing_fallthrough",
                sensitivity=sensitivity.value,
                privacy_mode=settings.privacy_mode_enabled,
                message="No local provider loaded; routing to a networked provider",
            )

        if settings.default_provider_id:
            default = next((p for p in candidates if p.config.id == settings.default_provider_id), None)
            if default is not None:
                return default

        return candidates[0]

    def _select_fallback(self, failed: AIProvider, sensitivity: Sensitivity) -> Optional[AIProvider]:
        for provider in self._providers.values():
            if provider is failed:
                continue
            if sensitivity == Sensitivity.HIGH and not provider.is_local:
                continue
            return provider
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _invoke(
        self,
        provider: AIProvider,
        messages: List[ChatMessage],
        system_prompt: Optional[str],
        task_type: Optional[str],
        timeout_seconds: Optional[float],
    ) -> GenerationResult:
        combined = combine_system_prompt(provider, system_prompt)
        start = time.time()
        with start_span(
            "ai.provider.generate",
            **{"ai.provider": provider.name, "ai.model": provider.model, "ai.task_type": task_type},
        ) as span:
            try:
                if timeout_seconds:
                    result = await asyncio.wait_for(provider.generate_text(messages, combined), timeout_seconds)
                else:
                    result = await provider.generate_text(messages, combined)
            except asyncio.TimeoutError as exc:
                record_provider_request(provider.name, success=False, duration_seconds=time.time() - start)
                raise ProviderError(provider.name, f"Timed out after {timeout_seconds}s") from exc
            except Exception:
                record_provider_request(provider.name, success=False, duration_seconds=time.time() - start)
                raise
            span.set_attribute("ai.tokens", result.usage.total_tokens)

        record_provider_request(
            provider.name,
            success=True,
            duration_seconds=time.time() - start,
            total_tokens=result.usage.total_tokens,
        )
        if result.provider is None:
            result = result.model_copy(update={"provider": provider.name})
        return result

    async def run(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
        sensitivity: Sensitivity = Sensitivity.MEDIUM,
        task_type: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        settings: Optional[EngineSettings] = None,
    ) -> GenerationResult:
        provider = await self.get_best_provider(sensitivity, settings)
        logger.info(
            "provider_routed",
            task_type=task_type or "unknown",
            provider=provider.name,
            sensitivity=sensitivity.value,
        )

        try:
            return await self._invoke(provider, messages, system_prompt, task_type, timeout_seconds)
        except Exception as primary_error:
            fallback = self._select_fallback(provider, sensitivity)
            logger.warning(
                "provider_failed",
                provider=provider.name,
                task_type=task_type or "unknown",
                error=str(primary_error),
                error_type=type(primary_error).__name__,
                fallback=fallback.name if fallback else None,
            )
            if fallback is None:
                raise

        record_provider_fallback(provider.name, fallback.name)
        logger.info("provider_fallback_started", from_provider=provider.name, to_provider=fallback.name)
        return await self._invoke(fallback, messages, system_prompt, task_type, timeout_seconds)

    async def _open_stream(
        self,
        provider: AIProvider,
        messages: List[ChatMessage],
        system_prompt: Optional[str],
        timeout_seconds: Optional[float],
    ) -> Tuple[AsyncIterator[str], Optional[str]]:
        """Start a stream and pull its first delta so opening failures surface here."""
        iterator = provider.stream_text(messages, combine_system_prompt(provider, system_prompt)).__aiter__()
        start = time.time()
        try:
            if timeout_seconds:
                first = await asyncio.wait_for(iterator.__anext__(), timeout_seconds)
            else:
                first = await iterator.__anext__()
        except StopAsyncIteration:
            first = None
        except asyncio.TimeoutError as exc:
            record_provider_request(provider.name, success=False, duration_seconds=time.time() - start)
            raise ProviderError(provider.name, f"Stream did not start within {timeout_seconds}s") from exc
        except Exception:
            record_provider_request(provider.name, success=False, duration_seconds=time.time() - start)
            raise

        record_provider_request(provider.name, success=True, duration_seconds=time.time() - start)
        return iterator, first

    async def stream(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
        sensitivity: Sensitivity = Sensitivity.MEDIUM,
        task_type: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        settings: Optional[EngineSettings] = None,
    ) -> AsyncIterator[str]:
        """
        Open a stream of text deltas.

        The stream is opened (first delta received) before this returns, so
        a provider that fails to start gets the same one-shot fallback as
        ``run``. Failures after that propagate to the consumer.
        """
        provider = await self.get_best_provider(sensitivity, settings)
        logger.info(
            "provider_stream_routed",
            task_type=task_type or "unknown",
            provider=provider.name,
            sensitivity=sensitivity.value,
        )

        try:
            iterator, first = await self._open_stream(provider, messages, system_prompt, timeout_seconds)
        except Exception as primary_error:
            fallback = self._select_fallback(provider, sensitivity)
            logger.warning(
                "provider_stream_failed",
                provider=provider.name,
                error=str(primary_error),
                error_type=type(primary_error).__name__,
                fallback=fallback.name if fallback else None,
            )
            if fallback is None:
                raise
            record_provider_fallback(provider.name, fallback.name)
            logger.info("provider_fallback_started", from_provider=provider.name, to_provider=fallback.name)
            iterator, first = await self._open_stream(fallback, messages, system_prompt, timeout_seconds)

        return _chain_deltas(first, iterator)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def test_provider(self, name: str) -> ProviderTestResult:
        """Send a fixed prompt to one loaded provider, bypassing routing."""
        provider = await self.get_provider(name)
        if provider is None:
            return ProviderTestResult(provider=name, success=False, error="Provider not found or not loaded")

        try:
            result = await self._invoke(
                provider,
                [ChatMessage(role="user", content=CONNECTION_TEST_PROMPT)],
                CONNECTION_TEST_SYSTEM_PROMPT,
                task_type="connection_test",
                timeout_seconds=None,
            )
        except Exception as e:
            logger.warning(
                "provider_test_failed",
                provider=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ProviderTestResult(provider=name, success=False, error="Connection test failed")

        return ProviderTestResult(
            provider=name,
            success="SUCCESS" in result.text.upper(),
            response=result.text,
            usage=result.usage,
        )

    async def list_providers(self) -> List[ProviderSummary]:
        """Enabled providers with masked credentials."""
        await self.initialize()
        configs = await self.record_store.list_enabled_providers()
        summaries = []
        for config in configs:
            provider_class = self.provider_classes.get(config.name)
            summaries.append(ProviderSummary(
                id=config.id,
                name=config.name,
                is_enabled=config.is_enabled,
                priority=config.priority,
                is_local=provider_class.is_local if provider_class else config.is_local,
                is_loaded=config.name in self._providers and self._providers[config.name].config.id == config.id,
                base_url=config.base_url,
                model_name=config.model_name,
                has_api_key=bool(config.api_key_encrypted),
                api_key_masked=self._masked_key(config),
                supported_features=config.supported_features,
            ))
        return summaries

    def _masked_key(self, config: ProviderConfig) -> Optional[str]:
        if not config.api_key_encrypted:
            return None
        try:
            return SecretStore.mask(self.secret_store.decrypt(config.api_key_encrypted))
        except DecryptionError:
            logger.warning("provider_key_unreadable", provider=config.name, provider_id=config.id)
            return None


async def _chain_deltas(first: Optional[str], iterator: AsyncIterator[str]) -> AsyncIterator[str]:
    if first is not None:
        yield first
    async for delta in iterator:
        yield delta
