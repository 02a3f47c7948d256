"""
Unit tests for the provider registry and router.
"""
import asyncio

import pytest

from app.services.ai.engine import NoProvidersAvailableError
from app.services.ai.providers import ProviderError
from app.services.ai.schema import ChatMessage, EngineSettings, ProviderConfig, Sensitivity
from app.services.storage import InMemoryRecordStore, StorageError

from conftest import make_config

MESSAGES = [ChatMessage(role="user", content="Summarize the attendance policy.")]


class CountingRecordStore(InMemoryRecordStore):
    def __init__(self, *args, fail_loads=0, **kwargs):
        super().__init__(*args, **kwargs)
        self.loads = 0
        self.fail_loads = fail_loads

    async def list_enabled_providers(self):
        self.loads += 1
        await asyncio.sleep(0.01)
        if self.loads <= self.fail_loads:
            raise StorageError("database unavailable")
        return await super().list_enabled_providers()


@pytest.mark.asyncio
async def test_privacy_mode_routes_to_local(make_registry):
    """Test privacy mode picks a local provider even when a remote one ranks first."""
    registry = make_registry(
        make_config("openai", priority=1),
        make_config("ollama", priority=50),
        settings=EngineSettings(privacy_mode_enabled=True),
    )
    provider = await registry.get_best_provider()
    assert provider.name == "ollama"


@pytest.mark.asyncio
async def test_high_sensitivity_routes_to_local(make_registry):
    """Test HIGH sensitivity forces local routing without privacy mode."""
    registry = make_registry(make_config("openai", priority=1), make_config("local-llm", priority=50))
    assert (await registry.get_best_provider(Sensitivity.HIGH)).name == "local-llm"
    assert (await registry.get_best_provider(Sensitivity.MEDIUM)).name == "openai"


@pytest.mark.asyncio
async def test_default_provider_wins_over_priority(make_registry):
    """Test the configured default is used when loaded."""
    registry = make_registry(
        make_config("openai", priority=1),
        make_config("anthropic", priority=2),
        settings=EngineSettings(default_provider_id="anthropic-id"),
    )
    assert (await registry.get_best_provider()).name == "anthropic"


@pytest.mark.asyncio
async def test_unloaded_default_falls_back_to_priority(make_registry):
    """Test a default that is not loaded is ignored."""
    registry = make_registry(
        make_config("groq", priority=5),
        make_config("openai", priority=1),
        settings=EngineSettings(default_provider_id="missing-id"),
    )
    assert (await registry.get_best_provider()).name == "openai"


@pytest.mark.asyncio
async def test_no_providers_raises(make_registry):
    """Test an empty registry raises NoProvidersAvailableError."""
    registry = make_registry()
    with pytest.raises(NoProvidersAvailableError, match="No AI providers available"):
        await registry.get_best_provider()


@pytest.mark.asyncio
async def test_privacy_falls_through_without_local(make_registry):
    """Test privacy routing falls through to a networked provider by default."""
    registry = make_registry(make_config("openai"), settings=EngineSettings(privacy_mode_enabled=True))
    assert (await registry.get_best_provider()).name == "openai"


@pytest.mark.asyncio
async def test_strict_privacy_refuses_remote(make_registry):
    """Test strict privacy raises instead of leaving the network."""
    registry = make_registry(make_config("openai"), strict_privacy=True)
    with pytest.raises(NoProvidersAvailableError):
        await registry.get_best_provider(Sensitivity.HIGH)


@pytest.mark.asyncio
async def test_run_falls_back_once(make_registry):
    """Test a failing provider is retried on exactly one other provider."""
    registry = make_registry(
        make_config("openai", priority=1, fail=True),
        make_config("anthropic", priority=2, reply="From anthropic"),
        make_config("groq", priority=3, reply="From groq"),
    )
    result = await registry.run(MESSAGES, system_prompt="Base.")

    providers = registry.providers
    assert result.text == "From anthropic"
    assert result.provider == "anthropic"
    assert len(providers["openai"].calls) == 1
    assert len(providers["anthropic"].calls) == 1
    assert providers["groq"].calls == []


@pytest.mark.asyncio
async def test_run_raises_when_fallback_fails(make_registry):
    """Test there is no second fallback."""
    registry = make_registry(
        make_config("openai", priority=1, fail=True),
        make_config("anthropic", priority=2, fail=True),
        make_config("groq", priority=3),
    )
    with pytest.raises(ProviderError):
        await registry.run(MESSAGES)
    assert registry.providers["groq"].calls == []


@pytest.mark.asyncio
async def test_run_without_fallback_candidate_raises(make_registry):
    """Test a single failing provider propagates its error."""
    registry = make_registry(make_config("openai", fail=True))
    with pytest.raises(ProviderError):
        await registry.run(MESSAGES)


@pytest.mark.asyncio
async def test_high_sensitivity_fallback_stays_local(make_registry):
    """Test a sensitive request never falls back to a networked provider."""
    registry = make_registry(
        make_config("openai", priority=1),
        make_config("ollama", priority=2, fail=True),
    )
    with pytest.raises(ProviderError):
        await registry.run(MESSAGES, sensitivity=Sensitivity.HIGH)
    assert registry.providers["openai"].calls == []


@pytest.mark.asyncio
async def test_high_sensitivity_fallback_to_other_local(make_registry):
    """Test a second local provider can take over a sensitive request."""
    registry = make_registry(
        make_config("openai", priority=1),
        make_config("ollama", priority=2, fail=True),
        make_config("local-llm", priority=3, reply="local answer"),
    )
    result = await registry.run(MESSAGES, sensitivity=Sensitivity.HIGH)
    assert result.provider == "local-llm"
    assert registry.providers["openai"].calls == []


@pytest.mark.asyncio
async def test_timeout_triggers_fallback(make_registry):
    """Test a provider exceeding the timeout counts as a failure."""
    registry = make_registry(
        make_config("openai", priority=1, delay=1.0),
        make_config("anthropic", priority=2, reply="fast"),
    )
    result = await registry.run(MESSAGES, timeout_seconds=0.05)
    assert result.text == "fast"


@pytest.mark.asyncio
async def test_custom_instructions_prefix_system_prompt(make_registry):
    """Test per-provider instructions are placed ahead of the composed prompt."""
    config = make_config("openai").model_copy(update={"custom_instructions": "Answer in French."})
    registry = make_registry(config)

    await registry.run(MESSAGES, system_prompt="Base.")
    assert registry.providers["openai"].calls[0]["system_prompt"] == "Answer in French.\n\nBase."


@pytest.mark.asyncio
async def test_concurrent_initialize_loads_once(make_registry):
    """Test concurrent first requests share one load."""
    store = CountingRecordStore(providers=[make_config("openai")])
    registry = make_registry(record_store=store)

    await asyncio.gather(*(registry.initialize() for _ in range(5)))
    await registry.initialize()

    assert store.loads == 1
    assert registry.is_initialized
    assert list(registry.providers) == ["openai"]


@pytest.mark.asyncio
async def test_failed_load_is_retried(make_registry):
    """Test a failed load is not cached."""
    store = CountingRecordStore(providers=[make_config("openai")], fail_loads=1)
    registry = make_registry(record_store=store)

    with pytest.raises(StorageError):
        await registry.initialize()
    assert not registry.is_initialized

    await registry.initialize()
    assert store.loads == 2
    assert registry.is_initialized


@pytest.mark.asyncio
async def test_reload_picks_up_new_rows(make_registry):
    """Test reload rebuilds the provider set."""
    store = InMemoryRecordStore(providers=[make_config("openai")])
    registry = make_registry(record_store=store)
    await registry.initialize()

    store.providers.append(make_config("ollama"))
    await registry.reload()
    assert list(registry.providers) == ["openai", "ollama"]


@pytest.mark.asyncio
async def test_undecryptable_and_unknown_providers_are_skipped(make_registry, secret_store):
    """Test one bad row does not prevent the others from loading."""
    registry = make_registry(
        make_config("openai", priority=1).model_copy(update={"api_key_encrypted": "not:a:token"}),
        make_config("mystery", priority=2),
        make_config("anthropic", priority=3).model_copy(
            update={"api_key_encrypted": secret_store.encrypt("sk-ant-123456789")}
        ),
    )
    await registry.initialize()

    assert list(registry.providers) == ["anthropic"]
    assert registry.providers["anthropic"].api_key == "sk-ant-123456789"


@pytest.mark.asyncio
async def test_short_nonce_credential_skips_only_that_provider(make_registry, secret_store):
    """Test a credential with a truncated nonce leaves the other providers loaded."""
    _, ciphertext, tag = secret_store.encrypt("sk-openai-abcdefgh1234").split(":")
    registry = make_registry(
        make_config("openai", priority=1).model_copy(update={"api_key_encrypted": f"abcd:{ciphertext}:{tag}"}),
        make_config("ollama", priority=2),
    )
    await registry.initialize()

    assert list(registry.providers) == ["ollama"]

    summaries = {s.name: s for s in await registry.list_providers()}
    assert summaries["openai"].is_loaded is False
    assert summaries["openai"].has_api_key is True
    assert summaries["openai"].api_key_masked is None
    assert summaries["ollama"].is_loaded is True


@pytest.mark.asyncio
async def test_stream_yields_deltas(make_registry):
    """Test a stream yields the provider's deltas in order."""
    registry = make_registry(make_config("openai", deltas=["Mon", "day", "."]))
    stream = await registry.stream(MESSAGES)
    assert [delta async for delta in stream] == ["Mon", "day", "."]


@pytest.mark.asyncio
async def test_stream_falls_back_before_first_delta(make_registry):
    """Test a stream that fails to open is served by the fallback."""
    registry = make_registry(
        make_config("openai", priority=1, fail_stream=True),
        make_config("anthropic", priority=2, deltas=["fallback"]),
    )
    stream = await registry.stream(MESSAGES)
    assert [delta async for delta in stream] == ["fallback"]


@pytest.mark.asyncio
async def test_test_provider(make_registry):
    """Test the connection test checks for the SUCCESS marker."""
    registry = make_registry(
        make_config("openai", reply="success"),
        make_config("anthropic", reply="I cannot comply"),
        make_config("groq", fail=True),
    )

    ok = await registry.test_provider("openai")
    assert ok.success and ok.response == "success"
    assert ok.usage.total_tokens == 10

    assert (await registry.test_provider("anthropic")).success is False

    failed = await registry.test_provider("groq")
    assert failed.success is False
    assert failed.error == "Connection test failed"

    missing = await registry.test_provider("mistral")
    assert missing.error == "Provider not found or not loaded"


@pytest.mark.asyncio
async def test_list_providers_masks_credentials(make_registry, secret_store):
    """Test the operator listing never exposes a plaintext key."""
    key = "sk-proj-abcdefghijklmnop"
    registry = make_registry(
        make_config("openai").model_copy(update={"api_key_encrypted": secret_store.encrypt(key)}),
        ProviderConfig(id="ollama-id", name="ollama", priority=200),
    )
    summaries = await registry.list_providers()

    openai, ollama = summaries
    assert openai.is_loaded and openai.has_api_key
    assert openai.api_key_masked.startswith("sk-p")
    assert openai.api_key_masked.endswith("mnop")
    assert key not in openai.model_dump_json()
    assert ollama.is_local and ollama.api_key_masked is None
