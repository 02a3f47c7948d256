"""
Pydantic models shared by the reasoning core.

Covers the persisted entities (ProviderConfig, EngineSettings,
KnowledgeChunk, DecisionLog, WarningRecord), the wire shapes exchanged with
providers (ChatMessage, GenerationResult) and the structured results handed
back to callers (ReasoningResult, ViolationCheck, CourseGenerationResult).
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Sensitivity(str, Enum):
    """Caller-declared classification of a request; HIGH forces local routing."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class KnowledgeScope(str, Enum):
    GLOBAL = "global"
    SUBJECT = "subject"


class Severity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"
    CRITICAL = "critical"


class ViolationOutcome(str, Enum):
    """Result variants of a violation check."""

    VIOLATION = "violation"
    NO_VIOLATION = "no_violation"
    NO_POLICY = "no_policy"
    ANALYSIS_ERROR = "analysis_error"


class Tone(str, Enum):
    PROFESSIONAL = "professional"
    FRIENDLY = "friendly"
    STRICT = "strict"
    MENTORING = "mentoring"
    CORPORATE = "corporate"


class AuthorityStyle(str, Enum):
    FIRM_BUT_FAIR = "firm_but_fair"
    STRICT_ENFORCEMENT = "strict_enforcement"
    SUPPORTIVE = "supportive"
    COLLABORATIVE = "collaborative"


class DisciplineFramework(str, Enum):
    PROGRESSIVE = "progressive"
    IMMEDIATE = "immediate"
    RESTORATIVE = "restorative"


# ============================================================================
# Provider wire shapes
# ============================================================================

class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GenerationResult(BaseModel):
    """Text produced by one provider call."""

    text: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    provider: Optional[str] = None
    model: Optional[str] = None


# ============================================================================
# Configuration entities
# ============================================================================

class ProviderCapabilities(BaseModel):
    vision: bool = False
    files: bool = False
    streaming: bool = True


class ProviderConfig(BaseModel):
    """
    One configured AI backend (row of ``ai_providers``).

    ``name`` doubles as the backend kind used to pick an adapter class.
    Lower ``priority`` is preferred.
    """

    id: str
    name: str
    is_enabled: bool = True
    priority: int = 100
    is_local: bool = False
    base_url: Optional[str] = None
    model_name: Optional[str] = None
    custom_instructions: Optional[str] = None
    api_key_encrypted: Optional[str] = None
    supported_features: ProviderCapabilities = Field(default_factory=ProviderCapabilities)
    settings: Dict[str, Any] = Field(default_factory=dict)


class PersonalityConfig(BaseModel):
    tone: Tone = Tone.PROFESSIONAL
    authority_style: AuthorityStyle = AuthorityStyle.FIRM_BUT_FAIR
    discipline_framework: DisciplineFramework = DisciplineFramework.PROGRESSIVE
    escalation_enabled: bool = True
    custom_rules: List[str] = Field(default_factory=list)

    @field_validator("custom_rules")
    @classmethod
    def drop_blank_rules(cls, value: List[str]) -> List[str]:
        return [rule.strip() for rule in value if rule and rule.strip()]


class EngineSettings(BaseModel):
    """Global routing policy and prompt configuration (singleton row)."""

    privacy_mode_enabled: bool = False
    default_provider_id: Optional[str] = None
    system_instructions: str = ""
    personality_config: Optional[PersonalityConfig] = None


class EngineSettingsUpdate(BaseModel):
    """Partial update; only fields explicitly sent are applied."""

    privacy_mode_enabled: Optional[bool] = None
    default_provider_id: Optional[str] = None
    system_instructions: Optional[str] = None
    personality_config: Optional[PersonalityConfig] = None


# ============================================================================
# Knowledge
# ============================================================================

class KnowledgeChunk(BaseModel):
    """
    One embedded fragment of a source document.

    ``authority_level`` 1 is the highest authority; ``similarity`` is only
    populated on query results.
    """

    id: str
    document_id: str
    content: str
    chunk_index: int = 0
    doc_scope: KnowledgeScope
    doc_type: str
    authority_level: int = Field(1, ge=1)
    subject_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    similarity: Optional[float] = None


class SearchFilters(BaseModel):
    scope: Optional[KnowledgeScope] = None
    subject_id: Optional[str] = None
    doc_type: Optional[str] = None
    limit: int = Field(10, ge=1, le=100)
    threshold: float = Field(0.5, ge=0.0, le=1.0)


# ============================================================================
# Audit & enforcement records
# ============================================================================

class DecisionLog(BaseModel):
    """Append-only audit record of one reasoning invocation."""

    id: Optional[str] = None
    action_type: str
    input_summary: str = ""
    output_summary: str = ""
    full_response: Optional[str] = None
    reasoning_context: Optional[str] = None
    source_chunk_ids: List[str] = Field(default_factory=list)
    authority_layers_used: List[str] = Field(default_factory=list)
    subject_id: Optional[str] = None
    triggered_by: Optional[str] = None
    is_autonomous: bool = True
    model_used: Optional[str] = None
    token_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


class ViolationVerdict(BaseModel):
    """
    Structured verdict the model must return for a violation analysis.

    Accepts both snake_case and camelCase keys since models echo either.
    """

    model_config = ConfigDict(populate_by_name=True)

    is_violation: bool = Field(validation_alias=AliasChoices("is_violation", "isViolation"))
    violation_type: str = Field(
        "unspecified",
        validation_alias=AliasChoices("violation_type", "violationType"),
    )
    severity: Severity = Severity.MINOR
    description: str = ""
    violated_clause: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("violated_clause", "violatedClause"),
    )
    recommended_action: str = Field(
        "none",
        validation_alias=AliasChoices("recommended_action", "recommendedAction"),
    )
    points_to_deduct: int = Field(
        0,
        ge=0,
        validation_alias=AliasChoices("points_to_deduct", "pointsToDeduct"),
    )

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower().strip()
        return value


class ViolationCheck(BaseModel):
    outcome: ViolationOutcome
    is_violation: bool = False
    violation_type: str = "none"
    severity: Severity = Severity.MINOR
    description: str = ""
    violated_clause: Optional[str] = None
    source_chunk: Optional[KnowledgeChunk] = None
    recommended_action: str = "none"
    points_to_deduct: int = Field(0, ge=0)


class WarningRecord(BaseModel):
    """Disciplinary record for a subject (row of ``ai_warnings``)."""

    id: Optional[str] = None
    subject_id: str
    warning_number: int = Field(..., ge=1)
    severity: Severity
    violation_type: str
    violation_description: str
    violated_clause: Optional[str] = None
    source_document_id: Optional[str] = None
    source_chunk_id: Optional[str] = None
    action_taken: str
    points_deducted: int = 0
    requires_meeting: bool = False
    escalated: bool = False
    escalation_reason: Optional[str] = None
    status: str = "active"
    issued_by: Optional[str] = None
    is_autonomous: bool = False
    decision_log_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Results returned to callers
# ============================================================================

class ReasoningResult(BaseModel):
    response: str
    source_chunk_ids: List[str] = Field(default_factory=list)
    authority_layers_used: List[str] = Field(default_factory=list)
    token_count: int = 0
    model_used: Optional[str] = None


class DecisionLogPage(BaseModel):
    logs: List[DecisionLog] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20
    total_pages: int = 0


class ProviderSummary(BaseModel):
    """Operator view of a provider row; the credential is only ever masked."""

    id: str
    name: str
    is_enabled: bool
    priority: int
    is_local: bool
    is_loaded: bool = False
    base_url: Optional[str] = None
    model_name: Optional[str] = None
    has_api_key: bool = False
    api_key_masked: Optional[str] = None
    supported_features: ProviderCapabilities = Field(default_factory=ProviderCapabilities)


class ProviderTestResult(BaseModel):
    provider: str
    success: bool
    response: Optional[str] = None
    usage: Optional[TokenUsage] = None
    error: Optional[str] = None


class GeneratedLesson(BaseModel):
    title: str
    content: str
    duration_minutes: int = Field(0, ge=0)
    order_index: int = 0


class GeneratedModule(BaseModel):
    title: str
    description: str = ""
    order_index: int = 0
    lessons: List[GeneratedLesson] = Field(default_factory=list)


class GeneratedCourse(BaseModel):
    title: str
    description: str = ""
    level: Literal["beginner", "intermediate", "advanced"] = "beginner"
    duration_minutes: int = Field(0, ge=0)
    modules: List[GeneratedModule] = Field(default_factory=list)
    knowledge_references: List[str] = Field(default_factory=list)


class CourseGenerationResult(BaseModel):
    """Either a generated course or a user-safe error message."""

    course: Optional[GeneratedCourse] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.course is not None
