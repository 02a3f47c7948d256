"""
Unit tests for the reasoning orchestrator.
"""
import pytest

from app.services.ai.engine import NoProvidersAvailableError
from app.services.ai.providers import ProviderError
from app.services.ai.reasoning import authority_layers
from app.services.ai.schema import ChatMessage, EngineSettings, PersonalityConfig
from app.services.storage import InMemoryRecordStore, StorageError

from conftest import FakeEmbedder, index_chunk, make_chunk, make_config


class FailingLogStore(InMemoryRecordStore):
    async def insert_decision_log(self, log):
        raise StorageError("audit table unavailable")


def test_authority_layers_deduplicated():
    """Test provenance tags are unique and personality is appended last."""
    knowledge = [
        make_chunk("g1", doc_type="policy"),
        make_chunk("g2", doc_type="policy"),
        make_chunk("s1", scope="subject", subject_id="intern-1", doc_type="plan"),
    ]
    settings = EngineSettings(personality_config=PersonalityConfig())
    assert authority_layers(knowledge, settings) == ["Layer1:policy", "Layer2:plan", "Layer3:personality"]
    assert authority_layers([], EngineSettings()) == []


@pytest.mark.asyncio
async def test_execute_reports_provenance(make_core):
    """Test the result lists the chunks and layers that shaped the prompt."""
    core = make_core(providers=[make_config("openai", reply="Reports are due Monday.", tokens=42)])
    await index_chunk(core.knowledge_store, make_chunk("g1", doc_type="policy", content="Reports due Monday."), 0.9)
    await index_chunk(
        core.knowledge_store,
        make_chunk("s1", scope="subject", subject_id="intern-1", doc_type="plan", content="Report on Friday."),
        0.8,
    )

    result = await core.reason("When is my report due?", subject_id="intern-1")

    assert result.response == "Reports are due Monday."
    assert result.source_chunk_ids == ["g1", "s1"]
    assert result.authority_layers_used == ["Layer1:policy", "Layer2:plan"]
    assert result.token_count == 42
    assert result.model_used == "openai-model"


@pytest.mark.asyncio
async def test_execute_sends_history_and_prompt(make_core):
    """Test history precedes the user message and the prompt carries knowledge."""
    core = make_core(providers=[make_config("openai")])
    await index_chunk(core.knowledge_store, make_chunk("g1", content="Attendance is mandatory."), 0.9)
    history = [
        ChatMessage(role="user", content="Hi"),
        ChatMessage(role="assistant", content="Hello"),
    ]

    await core.reason("Can I skip standup?", history=history)

    call = core.registry.providers["openai"].calls[0]
    assert [m.content for m in call["messages"]] == ["Hi", "Hello", "Can I skip standup?"]
    assert "Attendance is mandatory." in call["system_prompt"]


@pytest.mark.asyncio
async def test_execute_writes_decision_log(make_core):
    """Test a decision log records what the answer was grounded on."""
    core = make_core(providers=[make_config("openai", reply="x" * 800)])
    await index_chunk(core.knowledge_store, make_chunk("g1"), 0.9)

    await core.reason("Question", subject_id="intern-1", triggered_by="admin-7")

    (log,) = core.record_store.decision_logs
    assert log.action_type == "chat_response"
    assert log.source_chunk_ids == ["g1"]
    assert log.subject_id == "intern-1"
    assert log.triggered_by == "admin-7"
    assert log.is_autonomous is False
    assert len(log.output_summary) == 500
    assert log.full_response == "x" * 800
    assert "=== CRITICAL OPERATING RULES ===" in log.reasoning_context


@pytest.mark.asyncio
async def test_execute_without_trigger_is_autonomous(make_core):
    """Test calls without an operator are logged as autonomous."""
    core = make_core(providers=[make_config("openai")])
    await core.reason("Question")
    assert core.record_store.decision_logs[0].is_autonomous is True


@pytest.mark.asyncio
async def test_retrieval_failure_still_answers(make_core):
    """Test an embedding outage degrades to an answer without knowledge."""
    core = make_core(providers=[make_config("openai", reply="General answer")], embedder=FakeEmbedder(fail=True))

    result = await core.reason("Question", subject_id="intern-1")

    assert result.response == "General answer"
    assert result.source_chunk_ids == []
    assert result.authority_layers_used == []


@pytest.mark.asyncio
async def test_decision_log_failure_is_swallowed(make_core):
    """Test the answer is returned even when the audit write fails."""
    store = FailingLogStore(providers=[make_config("openai", reply="Answer")])
    core = make_core(record_store=store)

    result = await core.reason("Question")
    assert result.response == "Answer"


@pytest.mark.asyncio
async def test_provider_failure_propagates(make_core):
    """Test exhausted routing surfaces the provider error and logs nothing."""
    core = make_core(providers=[make_config("openai", fail=True)])
    with pytest.raises(ProviderError):
        await core.reason("Question")
    assert core.record_store.decision_logs == []


@pytest.mark.asyncio
async def test_no_providers_propagates(make_core):
    """Test an empty registry surfaces NoProvidersAvailableError."""
    core = make_core()
    with pytest.raises(NoProvidersAvailableError):
        await core.reason("Question")


@pytest.mark.asyncio
async def test_privacy_mode_uses_local_provider(make_core):
    """Test engine settings drive routing for reasoning calls."""
    core = make_core(
        providers=[make_config("openai", priority=1), make_config("ollama", priority=2, reply="local")],
        settings=EngineSettings(privacy_mode_enabled=True),
    )
    result = await core.reason("Question")
    assert result.response == "local"
    assert core.registry.providers["openai"].calls == []


@pytest.mark.asyncio
async def test_analyze_submission_and_document_action_types(make_core):
    """Test analysis helpers tag their decision logs."""
    core = make_core(providers=[make_config("openai")])

    await core.orchestrator.analyze_submission("def add(a, b): return a + b", "intern-1", context="Week 2")
    await core.orchestrator.analyze_document("Quarterly report text")

    actions = [log.action_type for log in core.record_store.decision_logs]
    assert actions == ["submission_review", "document_analysis"]
    prompt = core.registry.providers["openai"].calls[0]["messages"][-1].content
    assert "def add(a, b)" in prompt
    assert "Additional context: Week 2" in prompt


@pytest.mark.asyncio
async def test_preview_prompt_makes_no_model_call(make_core):
    """Test prompt preview composes without routing."""
    core = make_core(
        providers=[make_config("openai")],
        settings=EngineSettings(system_instructions="You are the program assistant."),
    )
    await index_chunk(core.knowledge_store, make_chunk("g1", content="Badge must be worn."), 0.9)

    prompt = await core.preview_prompt("badge rules")

    assert prompt.startswith("You are the program assistant.")
    assert "Badge must be worn." in prompt
    assert core.registry.providers == {}
