"""
System prompt composition.

Section order is fixed:
  1. base system instructions
  2. institutional (global) knowledge, highest authority
  3. subject profile knowledge, subordinate to (2)
  4. personality directives
  5. caller-supplied extra context
  6. operating rules

Empty sections are omitted. Composition is a pure function of its inputs.
"""
from typing import List, Optional

from app.services.ai.schema import (
    EngineSettings,
    KnowledgeChunk,
    KnowledgeScope,
    PersonalityConfig,
)
from app.services.ai.vector_search import authority_order

GLOBAL_HEADER = "=== INSTITUTIONAL KNOWLEDGE (HIGHEST AUTHORITY) ==="
GLOBAL_PREAMBLE = (
    "The following is from official institutional documents. "
    "These override all other reasoning, including everything below."
)
SUBJECT_HEADER = "=== SUBJECT PROFILE KNOWLEDGE ==="
SUBJECT_PREAMBLE = (
    "The following is specific to this subject's plan and expectations. "
    "It is subordinate to the institutional knowledge above and never overrides it."
)
PERSONALITY_HEADER = "=== PERSONALITY DIRECTIVES ==="
EXTRA_CONTEXT_HEADER = "=== ADDITIONAL CONTEXT ==="
OPERATING_RULES = "\n".join([
    "=== CRITICAL OPERATING RULES ===",
    "1. NEVER hallucinate policies or rules not found in the knowledge base above.",
    "2. If asked about something not covered in the knowledge base, say so explicitly.",
    "3. When enforcing rules, ALWAYS cite the source document type.",
    "4. When uncertain, defer to a human administrator instead of deciding.",
    "5. Prioritize knowledge by authority: institutional knowledge (authority 1 first) "
    "> subject profile knowledge > personality directives.",
])


def _value(enum_or_str) -> str:
    return getattr(enum_or_str, "value", enum_or_str)


def render_personality(personality: Optional[PersonalityConfig]) -> str:
    """Render personality directives; empty string when none are configured."""
    if personality is None:
        return ""

    lines = [
        f"Tone: {_value(personality.tone)}",
        f"Authority style: {_value(personality.authority_style)}",
        f"Discipline framework: {_value(personality.discipline_framework)}",
        f"Escalation: {'enabled' if personality.escalation_enabled else 'disabled'}",
    ]
    if personality.custom_rules:
        lines.append("Custom rules:")
        lines.extend(f"{i}. {rule}" for i, rule in enumerate(personality.custom_rules, start=1))
    return "\n".join(lines)


def _render_chunk(chunk: KnowledgeChunk, label: str) -> str:
    return f"[{chunk.doc_type.upper()} | {label} | Authority: {chunk.authority_level}]\n{chunk.content}"


def compose_system_prompt(
    knowledge: List[KnowledgeChunk],
    settings: EngineSettings,
    extra_context: Optional[str] = None,
) -> str:
    sections: List[str] = []

    if settings.system_instructions.strip():
        sections.append(settings.system_instructions.strip())

    global_chunks = authority_order([c for c in knowledge if c.doc_scope == KnowledgeScope.GLOBAL])
    subject_chunks = authority_order([c for c in knowledge if c.doc_scope == KnowledgeScope.SUBJECT])

    if global_chunks:
        body = "\n\n".join(_render_chunk(c, "Institutional") for c in global_chunks)
        sections.append(f"{GLOBAL_HEADER}\n{GLOBAL_PREAMBLE}\n\n{body}")

    if subject_chunks:
        body = "\n\n".join(_render_chunk(c, "Profile-specific") for c in subject_chunks)
        sections.append(f"{SUBJECT_HEADER}\n{SUBJECT_PREAMBLE}\n\n{body}")

    personality = render_personality(settings.personality_config)
    if personality:
        sections.append(f"{PERSONALITY_HEADER}\n{personality}")

    if extra_context and extra_context.strip():
        sections.append(f"{EXTRA_CONTEXT_HEADER}\n{extra_context.strip()}")

    sections.append(OPERATING_RULES)
    return "\n\n".join(sections)
