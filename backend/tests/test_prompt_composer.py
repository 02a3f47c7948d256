"""
Unit tests for system prompt composition.
"""
from app.services.ai.prompt_composer import (
    EXTRA_CONTEXT_HEADER,
    GLOBAL_HEADER,
    PERSONALITY_HEADER,
    SUBJECT_HEADER,
    compose_system_prompt,
    render_personality,
)
from app.services.ai.schema import EngineSettings, PersonalityConfig, Tone

from conftest import make_chunk


def test_sections_in_fixed_order():
    """Test base, global, subject, personality, context and rules appear in order."""
    settings = EngineSettings(
        system_instructions="You are the internship assistant.",
        personality_config=PersonalityConfig(tone=Tone.MENTORING),
    )
    knowledge = [
        make_chunk("s1", scope="subject", subject_id="intern-1", doc_type="plan", content="Weekly report due Friday."),
        make_chunk("g1", doc_type="policy", content="Reports are due Monday."),
    ]

    prompt = compose_system_prompt(knowledge, settings, extra_context="Intern is in week 3.")

    positions = [
        prompt.index("You are the internship assistant."),
        prompt.index(GLOBAL_HEADER),
        prompt.index(SUBJECT_HEADER),
        prompt.index(PERSONALITY_HEADER),
        prompt.index(EXTRA_CONTEXT_HEADER),
        prompt.index("=== CRITICAL OPERATING RULES ==="),
    ]
    assert positions == sorted(positions)


def test_global_knowledge_precedes_conflicting_subject_knowledge():
    """Test institutional rules are placed above and declared to override subject rules."""
    knowledge = [
        make_chunk(
            "s1",
            scope="subject",
            subject_id="intern-1",
            authority=2,
            content="You may submit daily reports whenever convenient.",
            similarity=0.99,
        ),
        make_chunk("g1", authority=1, content="Interns must submit daily reports by 6pm.", similarity=0.5),
    ]
    prompt = compose_system_prompt(knowledge, EngineSettings())

    global_at = prompt.index("Interns must submit daily reports by 6pm.")
    assert prompt.index(GLOBAL_HEADER) < global_at < prompt.index(SUBJECT_HEADER)
    assert global_at < prompt.index("You may submit daily reports whenever convenient.")
    assert "override all other reasoning" in prompt
    assert "subordinate to the institutional knowledge" in prompt


def test_chunk_labels():
    """Test each chunk carries its type, scope label and authority level."""
    knowledge = [
        make_chunk("g1", doc_type="handbook", authority=2, content="Dress code applies."),
        make_chunk("s1", scope="subject", subject_id="intern-1", doc_type="plan", content="Pair with mentor."),
    ]
    prompt = compose_system_prompt(knowledge, EngineSettings())

    assert "[HANDBOOK | Institutional | Authority: 2]\nDress code applies." in prompt
    assert "[PLAN | Profile-specific | Authority: 1]\nPair with mentor." in prompt


def test_global_chunks_sorted_by_authority():
    """Test a higher-authority chunk is rendered first within its section."""
    knowledge = [
        make_chunk("low", authority=3, content="Authority three rule.", similarity=0.99),
        make_chunk("high", authority=1, content="Authority one rule.", similarity=0.41),
    ]
    prompt = compose_system_prompt(knowledge, EngineSettings())
    assert prompt.index("Authority one rule.") < prompt.index("Authority three rule.")


def test_empty_sections_are_omitted():
    """Test a bare prompt contains only the operating rules."""
    prompt = compose_system_prompt([], EngineSettings())

    assert GLOBAL_HEADER not in prompt
    assert SUBJECT_HEADER not in prompt
    assert PERSONALITY_HEADER not in prompt
    assert EXTRA_CONTEXT_HEADER not in prompt
    assert prompt.startswith("=== CRITICAL OPERATING RULES ===")


def test_operating_rules_are_numbered():
    """Test all five operating rules are present and numbered."""
    prompt = compose_system_prompt([], EngineSettings())
    for number in range(1, 6):
        assert f"\n{number}. " in prompt
    assert "NEVER hallucinate" in prompt


def test_composition_is_deterministic():
    """Test identical inputs compose identical prompts."""
    knowledge = [make_chunk("g1"), make_chunk("g2", authority=2)]
    settings = EngineSettings(system_instructions="Base.")
    assert compose_system_prompt(knowledge, settings) == compose_system_prompt(knowledge, settings)


def test_render_personality():
    """Test personality directives and numbered custom rules."""
    personality = PersonalityConfig(
        tone=Tone.STRICT,
        escalation_enabled=False,
        custom_rules=["Always address interns by name", "  ", "Never use slang"],
    )
    rendered = render_personality(personality)

    assert "Tone: strict" in rendered
    assert "Authority style: firm_but_fair" in rendered
    assert "Discipline framework: progressive" in rendered
    assert "Escalation: disabled" in rendered
    assert "Custom rules:\n1. Always address interns by name\n2. Never use slang" in rendered


def test_render_personality_none():
    """Test no personality renders nothing."""
    assert render_personality(None) == ""
