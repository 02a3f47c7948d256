"""
Progressive enforcement.

Per subject: no warnings -> warning 1 -> warning 2 -> warning 3 (meeting
required) -> warning 4+ (escalated). Warning numbers count active warnings
only, so closing a warning elsewhere lowers the next number.

check_for_violations asks the model for a structured verdict grounded in
institutional policy; issue_warning turns a violation into a WarningRecord,
its DecisionLog and a point deduction.
"""
import asyncio
import weakref
from typing import List, Optional

from pydantic import ValidationError

from app.core.logging import get_logger
from app.core.metrics import record_violation_check, record_warning_issued
from app.services.ai.audit import DecisionLogger
from app.services.ai.engine import ProviderRegistry
from app.services.ai.json_output import extract_json
from app.services.ai.schema import (
    ChatMessage,
    DecisionLog,
    KnowledgeChunk,
    Sensitivity,
    ViolationCheck,
    ViolationOutcome,
    ViolationVerdict,
    WarningRecord,
)
from app.services.ai.vector_search import KnowledgeRetriever, authority_order
from app.services.storage.base import RecordStore

logger = get_logger(__name__)

POLICY_SEARCH_LIMIT = 5
MEETING_FROM_WARNING = 3
ESCALATION_AFTER_WARNING = 3
TIER_TWO_MIN_POINTS = 100
TIER_THREE_MIN_POINTS = 200

ANALYZER_SYSTEM_PROMPT = "You are a policy enforcement analyzer. Respond ONLY with valid JSON."


def build_analysis_prompt(policies: List[KnowledgeChunk], description: str, context: Optional[str]) -> str:
    knowledge = "\n\n".join(f"[{chunk.doc_type}] {chunk.content}" for chunk in policies)
    extra = f"\nADDITIONAL CONTEXT: {context}" if context else ""
    return f"""You are a strict policy enforcement analyzer. Analyze the following situation against the institutional policies.

INSTITUTIONAL POLICIES:
{knowledge}

SITUATION TO ANALYZE:
{description}{extra}

Respond with a JSON object (no markdown, just raw JSON):
{{
  "is_violation": true/false,
  "violation_type": "short type such as late_submission, missed_report, quality_issue, plagiarism",
  "severity": "minor|moderate|severe|critical",
  "description": "specific description of the violation",
  "violated_clause": "exact quote of the clause from the policies above that was violated, or null",
  "recommended_action": "what action should be taken",
  "points_to_deduct": number
}}"""


def points_for_warning(warning_number: int, recommended: int) -> int:
    """Model-recommended deduction, raised to the tier floor."""
    if warning_number >= 3:
        return max(recommended, TIER_THREE_MIN_POINTS)
    if warning_number == 2:
        return max(recommended, TIER_TWO_MIN_POINTS)
    return recommended


def _source_chunk(policies: List[KnowledgeChunk], clause: Optional[str]) -> KnowledgeChunk:
    if clause:
        quoted = clause.strip().strip('"').lower()
        for chunk in policies:
            if quoted and quoted in chunk.content.lower():
                return chunk
    return policies[0]


class EnforcementEngine:
    def __init__(
        self,
        retriever: KnowledgeRetriever,
        registry: ProviderRegistry,
        record_store: RecordStore,
        decision_logger: DecisionLogger,
    ):
        self.retriever = retriever
        self.registry = registry
        self.record_store = record_store
        self.decision_logger = decision_logger
        # entries vanish once no caller holds or awaits the lock
        self._subject_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, subject_id: str) -> asyncio.Lock:
        lock = self._subject_locks.get(subject_id)
        if lock is None:
            lock = asyncio.Lock()
            self._subject_locks[subject_id] = lock
        return lock

    async def check_for_violations(
        self,
        description: str,
        subject_id: str,
        context: Optional[str] = None,
    ) -> ViolationCheck:
        """
        Judge an incident against institutional policy.

        No relevant policy -> NO_POLICY without a model call. Provider
        failure or malformed output -> ANALYSIS_ERROR with zero points.
        """
        policies = await self.retriever.search_global(
            f"rules violations penalties {description}",
            limit=POLICY_SEARCH_LIMIT,
        )
        if not policies:
            record_violation_check(ViolationOutcome.NO_POLICY.value)
            logger.info("violation_check_no_policy", subject_id=subject_id)
            return ViolationCheck(
                outcome=ViolationOutcome.NO_POLICY,
                description="No relevant policy found",
            )

        policies = authority_order(policies)
        prompt = build_analysis_prompt(policies, description, context)

        try:
            result = await self.registry.run(
                [ChatMessage(role="user", content=prompt)],
                system_prompt=ANALYZER_SYSTEM_PROMPT,
                sensitivity=Sensitivity.HIGH,
                task_type="violation_check",
            )
            verdict = ViolationVerdict.model_validate(extract_json(result.text))
        except (ValueError, ValidationError) as e:
            return self._analysis_error(subject_id, "malformed_output", e)
        except Exception as e:
            return self._analysis_error(subject_id, "provider_failure", e)

        outcome = ViolationOutcome.VIOLATION if verdict.is_violation else ViolationOutcome.NO_VIOLATION
        record_violation_check(outcome.value)
        logger.info(
            "violation_check_completed",
            subject_id=subject_id,
            outcome=outcome.value,
            violation_type=verdict.violation_type,
            severity=verdict.severity.value,
        )
        return ViolationCheck(
            outcome=outcome,
            is_violation=verdict.is_violation,
            violation_type=verdict.violation_type,
            severity=verdict.severity,
            description=verdict.description,
            violated_clause=verdict.violated_clause,
            source_chunk=_source_chunk(policies, verdict.violated_clause),
            recommended_action=verdict.recommended_action,
            points_to_deduct=verdict.points_to_deduct if verdict.is_violation else 0,
        )

    def _analysis_error(self, subject_id: str, reason: str, error: Exception) -> ViolationCheck:
        record_violation_check(ViolationOutcome.ANALYSIS_ERROR.value)
        logger.warning(
            "violation_analysis_failed",
            subject_id=subject_id,
            reason=reason,
            error=str(error),
            error_type=type(error).__name__,
        )
        return ViolationCheck(
            outcome=ViolationOutcome.ANALYSIS_ERROR,
            violation_type="analysis_error",
            description="Could not analyze the situation",
            recommended_action="Manual review required",
        )

    async def issue_warning(
        self,
        subject_id: str,
        violation: ViolationCheck,
        issued_by: Optional[str] = None,
        is_autonomous: bool = False,
    ) -> Optional[WarningRecord]:
        """
        Issue the next warning for ``subject_id``.

        Issuance is serialized per subject. Returns None (already logged)
        when the warning could not be fully issued; a warning whose point
        deduction failed is deleted again, and a ``warning_rolled_back`` log
        records that the earlier ``warning_issued`` log has no warning behind it.
        """
        if not violation.is_violation:
            raise ValueError("Cannot issue a warning for a check that found no violation")

        async with self._lock_for(subject_id):
            try:
                active = await self.record_store.count_active_warnings(subject_id)
            except Exception as e:
                logger.error(
                    "warning_count_failed",
                    subject_id=subject_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return None

            warning_number = active + 1
            requires_meeting = warning_number >= MEETING_FROM_WARNING
            escalated = warning_number > ESCALATION_AFTER_WARNING
            escalation_reason = (
                f"Subject has {warning_number} active warnings. "
                "Automatic escalation per progressive discipline policy."
                if escalated else None
            )
            points = points_for_warning(warning_number, violation.points_to_deduct)
            source = violation.source_chunk

            decision_log_id = await self.decision_logger.record(DecisionLog(
                action_type="warning_issued",
                input_summary=f"Violation check: {violation.violation_type} for subject {subject_id}",
                output_summary=f"Warning #{warning_number} issued: {violation.description}",
                full_response=violation.model_dump_json(),
                source_chunk_ids=[source.id] if source else [],
                authority_layers_used=["Layer1:enforcement"],
                subject_id=subject_id,
                triggered_by=issued_by,
                is_autonomous=is_autonomous,
            ))
            if decision_log_id is None:
                logger.error("warning_not_issued", subject_id=subject_id, reason="decision_log_unavailable")
                return None

            try:
                warning = await self.record_store.insert_warning(WarningRecord(
                    subject_id=subject_id,
                    warning_number=warning_number,
                    severity=violation.severity,
                    violation_type=violation.violation_type,
                    violation_description=violation.description,
                    violated_clause=violation.violated_clause,
                    source_document_id=source.document_id if source else None,
                    source_chunk_id=source.id if source else None,
                    action_taken=violation.recommended_action,
                    points_deducted=points,
                    requires_meeting=requires_meeting,
                    escalated=escalated,
                    escalation_reason=escalation_reason,
                    issued_by=issued_by,
                    is_autonomous=is_autonomous,
                    decision_log_id=decision_log_id,
                ))
            except Exception as e:
                logger.error(
                    "warning_insert_failed",
                    subject_id=subject_id,
                    warning_number=warning_number,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self._record_rollback(subject_id, warning_number, decision_log_id, "warning insert failed")
                return None

            if points > 0 and not await self._deduct_points(subject_id, points, warning):
                await self._record_rollback(subject_id, warning_number, decision_log_id, "point deduction failed")
                return None

        record_warning_issued(warning.severity.value, escalated)
        logger.info(
            "warning_issued",
            subject_id=subject_id,
            warning_id=warning.id,
            warning_number=warning_number,
            severity=warning.severity.value,
            points_deducted=points,
            requires_meeting=requires_meeting,
            escalated=escalated,
            is_autonomous=is_autonomous,
        )
        return warning

    async def _deduct_points(self, subject_id: str, points: int, warning: WarningRecord) -> bool:
        """Apply the deduction; on failure delete ``warning`` and return False."""
        try:
            balance = await self.record_store.get_points(subject_id)
            if balance is None:
                logger.warning("subject_profile_missing", subject_id=subject_id, points=points)
                return True
            await self.record_store.set_points(subject_id, max(0, balance - points))
            return True
        except Exception as e:
            logger.error(
                "point_deduction_failed",
                subject_id=subject_id,
                warning_id=warning.id,
                error=str(e),
                error_type=type(e).__name__,
            )

        try:
            await self.record_store.delete_warning(warning.id)
            logger.info("warning_rolled_back", subject_id=subject_id, warning_id=warning.id)
        except Exception as e:
            logger.critical(
                "warning_rollback_failed",
                subject_id=subject_id,
                warning_id=warning.id,
                error=str(e),
                error_type=type(e).__name__,
            )
        return False

    async def _record_rollback(
        self,
        subject_id: str,
        warning_number: int,
        decision_log_id: str,
        reason: str,
    ) -> None:
        """Audit that the warning announced by ``decision_log_id`` does not exist."""
        await self.decision_logger.record(DecisionLog(
            action_type="warning_rolled_back",
            input_summary=f"Reverting decision log {decision_log_id}",
            output_summary=f"Warning #{warning_number} not issued: {reason}",
            subject_id=subject_id,
            authority_layers_used=["Layer1:enforcement"],
        ))

    async def get_subject_warnings(self, subject_id: str) -> List[WarningRecord]:
        """Warning history, newest first; empty on store failure."""
        try:
            return await self.record_store.list_warnings(subject_id)
        except Exception as e:
            logger.error(
                "warning_history_failed",
                subject_id=subject_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return []
