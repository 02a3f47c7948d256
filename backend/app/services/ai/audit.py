"""
Decision log writer and audit trail reader.

Every reasoning invocation leaves an append-only DecisionLog. Writes are
best-effort: a failed write is logged and counted but never propagates to
the operation being audited. Reads raise StorageError like any store call.
"""
import math
from typing import Optional

from app.core.logging import get_logger
from app.core.metrics import record_decision_log_failure
from app.services.ai.schema import DecisionLog, DecisionLogPage
from app.services.storage.base import RecordStore

logger = get_logger(__name__)

SUMMARY_MAX_CHARS = 500
CONTEXT_MAX_CHARS = 10000
MAX_PAGE_SIZE = 100


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    return text if len(text) <= limit else text[:limit]


class DecisionLogger:
    def __init__(self, record_store: RecordStore):
        self.record_store = record_store

    async def record(self, log: DecisionLog) -> Optional[str]:
        """Persist ``log``; returns its id, or None when the write failed."""
        log = log.model_copy(update={
            "input_summary": truncate(log.input_summary, SUMMARY_MAX_CHARS),
            "output_summary": truncate(log.output_summary, SUMMARY_MAX_CHARS),
            "reasoning_context": truncate(log.reasoning_context, CONTEXT_MAX_CHARS),
        })
        try:
            log_id = await self.record_store.insert_decision_log(log)
        except Exception as e:
            record_decision_log_failure(log.action_type)
            logger.error(
                "decision_log_write_failed",
                action_type=log.action_type,
                subject_id=log.subject_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        logger.debug("decision_log_written", action_type=log.action_type, decision_log_id=log_id)
        return log_id

    async def list_logs(
        self,
        action_type: Optional[str] = None,
        subject_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> DecisionLogPage:
        """Audit trail, newest first. Page size is capped at MAX_PAGE_SIZE."""
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        logs, total = await self.record_store.list_decision_logs(
            action_type=action_type,
            subject_id=subject_id,
            page=page,
            limit=limit,
        )
        return DecisionLogPage(
            logs=logs,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        )
