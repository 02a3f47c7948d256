"""
Reasoning core HTTP surface.

POST   /ai/reason                     grounded answer with provenance
POST   /ai/analyze                    check_violation | analyze_submission | analyze_document
GET    /ai/prompt/preview             composed system prompt, no model call
GET    /ai/providers                  enabled providers, credentials masked
POST   /ai/providers/{name}/test      connection test against one provider
GET    /ai/settings                   engine settings
PUT    /ai/settings                   partial settings update (audit-logged)
GET    /ai/warnings/{subject_id}      warning history, newest first
GET    /ai/logs                       decision audit trail, paginated, newest first
POST   /ai/courses/generate           knowledge-aware course structure
DELETE /ai/documents/{document_id}    remove a document's chunks

Authentication is handled upstream; the acting operator id travels in the
request body.
"""
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from app.core.logging import get_logger, set_user_id
from app.services.ai.container import ReasoningCore
from app.services.ai.schema import (
    ChatMessage,
    CourseGenerationResult,
    DecisionLogPage,
    EngineSettings,
    EngineSettingsUpdate,
    ProviderSummary,
    ProviderTestResult,
    ReasoningResult,
    ViolationCheck,
    WarningRecord,
)

logger = get_logger(__name__)

router = APIRouter()


def get_core(request: Request) -> ReasoningCore:
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(status_code=503, detail="Reasoning core not initialized")
    return core


class ReasonRequest(BaseModel):
    message: str = Field(..., min_length=1)
    subject_id: Optional[str] = None
    history: List[ChatMessage] = Field(default_factory=list)
    triggered_by: Optional[str] = None


class AnalyzeRequest(BaseModel):
    action: Literal["check_violation", "analyze_submission", "analyze_document"]
    description: str = Field(..., min_length=1)
    subject_id: Optional[str] = None
    context: Optional[str] = None
    auto_warn: bool = False
    triggered_by: Optional[str] = None


class AnalyzeResponse(BaseModel):
    violation: Optional[ViolationCheck] = None
    warning: Optional[WarningRecord] = None
    analysis: Optional[ReasoningResult] = None


class SettingsUpdateRequest(EngineSettingsUpdate):
    updated_by: Optional[str] = None


class CourseRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    triggered_by: Optional[str] = None


@router.post("/reason", response_model=ReasoningResult)
async def reason(body: ReasonRequest, core: ReasoningCore = Depends(get_core)):
    if body.triggered_by:
        set_user_id(body.triggered_by)
    return await core.reason(
        body.message,
        subject_id=body.subject_id,
        history=body.history,
        triggered_by=body.triggered_by,
    )


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze(body: AnalyzeRequest, core: ReasoningCore = Depends(get_core)):
    if body.action in ("check_violation", "analyze_submission") and not body.subject_id:
        raise HTTPException(status_code=400, detail=f"subject_id is required for {body.action}")

    if body.action == "check_violation":
        violation = await core.check_violation(body.description, body.subject_id, body.context)
        warning = None
        if violation.is_violation and body.auto_warn:
            warning = await core.issue_warning(
                body.subject_id,
                violation,
                issued_by=body.triggered_by,
                is_autonomous=body.triggered_by is None,
            )
        return AnalyzeResponse(violation=violation, warning=warning)

    if body.action == "analyze_submission":
        result = await core.orchestrator.analyze_submission(
            body.description,
            body.subject_id,
            context=body.context,
            triggered_by=body.triggered_by,
        )
    else:
        result = await core.orchestrator.analyze_document(
            body.description,
            subject_id=body.subject_id,
            triggered_by=body.triggered_by,
        )
    return AnalyzeResponse(analysis=result)


@router.get("/prompt/preview")
async def preview_prompt(
    sample_query: Optional[str] = Query(None, description="Optional query to retrieve knowledge for"),
    core: ReasoningCore = Depends(get_core),
):
    return {"prompt": await core.preview_prompt(sample_query)}


@router.get("/providers", response_model=List[ProviderSummary])
async def list_providers(core: ReasoningCore = Depends(get_core)):
    return await core.registry.list_providers()


@router.post("/providers/{name}/test", response_model=ProviderTestResult)
async def test_provider(name: str, core: ReasoningCore = Depends(get_core)):
    if await core.registry.get_provider(name) is None:
        raise HTTPException(status_code=404, detail=f"Provider {name} not found or not loaded")
    return await core.registry.test_provider(name)


@router.get("/settings", response_model=EngineSettings)
async def get_settings(core: ReasoningCore = Depends(get_core)):
    return await core.settings.get_settings()


@router.put("/settings", response_model=EngineSettings)
async def update_settings(body: SettingsUpdateRequest, core: ReasoningCore = Depends(get_core)):
    update = EngineSettingsUpdate.model_validate(body.model_dump(exclude_unset=True, exclude={"updated_by"}))
    return await core.settings.update_settings(update, updated_by=body.updated_by)


@router.get("/warnings/{subject_id}", response_model=List[WarningRecord])
async def subject_warnings(subject_id: str, core: ReasoningCore = Depends(get_core)):
    return await core.enforcement.get_subject_warnings(subject_id)


@router.get("/logs", response_model=DecisionLogPage)
async def decision_logs(
    action_type: Optional[str] = None,
    subject_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    core: ReasoningCore = Depends(get_core),
):
    return await core.decision_logger.list_logs(
        action_type=action_type,
        subject_id=subject_id,
        page=page,
        limit=limit,
    )


@router.post("/courses/generate", response_model=CourseGenerationResult)
async def generate_course(body: CourseRequest, core: ReasoningCore = Depends(get_core)):
    result = await core.courses.generate_course(body.prompt, triggered_by=body.triggered_by)
    if not result.ok:
        raise HTTPException(status_code=503, detail=result.error)
    return result


@router.delete("/documents/{document_id}")
async def delete_document(document_id: str, core: ReasoningCore = Depends(get_core)):
    removed = await core.delete_document(document_id)
    return {"document_id": document_id, "chunks_removed": removed}
