"""
Supabase-backed stores.

Tables:
- document_chunks   (pgvector column ``embedding``; searched via the
                     ``match_document_chunks`` RPC)
- ai_providers, ai_settings, ai_decision_logs, ai_warnings, profiles

The supabase-py client is synchronous, so every call runs in a worker
thread via asyncio.to_thread and never blocks the event loop.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from supabase import Client

from app.core.logging import get_logger
from app.services.ai.schema import (
    DecisionLog,
    EngineSettings,
    KnowledgeChunk,
    ProviderConfig,
    SearchFilters,
    WarningRecord,
)
from app.services.storage.base import KnowledgeStore, RecordStore, StorageError

logger = get_logger(__name__)

SETTINGS_ROW_ID = "00000000-0000-0000-0000-000000000001"


async def _execute(operation: str, fn: Callable[[], Any]) -> Any:
    """Run a blocking Supabase call in a thread and normalize failures."""
    try:
        return await asyncio.to_thread(fn)
    except Exception as e:
        logger.error(
            "supabase_operation_failed",
            operation=operation,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise StorageError(f"{operation} failed: {e}") from e


def _chunk_from_row(row: Dict[str, Any]) -> KnowledgeChunk:
    return KnowledgeChunk(
        id=str(row["id"]),
        document_id=str(row["document_id"]),
        content=row["content"],
        chunk_index=row.get("chunk_index") or 0,
        doc_scope=row["doc_scope"],
        doc_type=row["doc_type"],
        authority_level=row.get("authority_level") or 1,
        subject_id=row.get("subject_id"),
        metadata=row.get("metadata") or {},
        similarity=row.get("similarity"),
    )


def _provider_from_row(row: Dict[str, Any]) -> ProviderConfig:
    row = dict(row)
    row["id"] = str(row["id"])
    row["supported_features"] = row.get("supported_features") or {}
    row["settings"] = row.get("settings") or {}
    return ProviderConfig.model_validate(row)


class SupabaseKnowledgeStore(KnowledgeStore):
    def __init__(self, client: Client):
        self.client = client

    async def upsert(self, chunk: KnowledgeChunk, embedding: Sequence[float]) -> None:
        row = chunk.model_dump(mode="json", exclude={"similarity"})
        row["embedding"] = list(embedding)
        await _execute(
            "chunk_upsert",
            lambda: self.client.table("document_chunks").upsert(row).execute(),
        )

    async def query(
        self,
        embedding: Sequence[float],
        k: int,
        filters: SearchFilters,
        similarity_threshold: float,
    ) -> List[KnowledgeChunk]:
        params = {
            "query_embedding": list(embedding),
            "match_count": k,
            "filter_scope": filters.scope.value if filters.scope else None,
            "filter_subject_id": filters.subject_id,
            "filter_doc_type": filters.doc_type,
            "similarity_threshold": similarity_threshold,
        }
        response = await _execute(
            "match_document_chunks",
            lambda: self.client.rpc("match_document_chunks", params).execute(),
        )
        return [_chunk_from_row(row) for row in (response.data or [])]

    async def delete_document(self, document_id: str) -> int:
        response = await _execute(
            "chunk_delete",
            lambda: self.client.table("document_chunks").delete().eq("document_id", document_id).execute(),
        )
        return len(response.data or [])


class SupabaseRecordStore(RecordStore):
    def __init__(self, client: Client):
        self.client = client

    async def list_enabled_providers(self) -> List[ProviderConfig]:
        response = await _execute(
            "providers_list",
            lambda: (
                self.client.table("ai_providers")
                .select("*")
                .eq("is_enabled", True)
                .order("priority")
                .execute()
            ),
        )
        return [_provider_from_row(row) for row in (response.data or [])]

    async def get_provider(self, provider_id: str) -> Optional[ProviderConfig]:
        response = await _execute(
            "provider_get",
            lambda: self.client.table("ai_providers").select("*").eq("id", provider_id).limit(1).execute(),
        )
        rows = response.data or []
        if not rows:
            return None
        return _provider_from_row(rows[0])

    async def get_engine_settings(self) -> EngineSettings:
        response = await _execute(
            "settings_get",
            lambda: self.client.table("ai_settings").select("*").eq("id", SETTINGS_ROW_ID).limit(1).execute(),
        )
        rows = response.data or []
        if not rows:
            return EngineSettings()
        row = rows[0]
        return EngineSettings(
            privacy_mode_enabled=bool(row.get("privacy_mode_enabled")),
            default_provider_id=str(row["default_provider_id"]) if row.get("default_provider_id") else None,
            system_instructions=row.get("system_instructions") or "",
            personality_config=row.get("personality_config"),
        )

    async def update_engine_settings(self, settings: EngineSettings) -> EngineSettings:
        payload = {**settings.model_dump(mode="json"), "id": SETTINGS_ROW_ID}
        await _execute(
            "settings_update",
            lambda: self.client.table("ai_settings").upsert(payload).execute(),
        )
        return settings

    async def insert_decision_log(self, log: DecisionLog) -> str:
        row = log.model_dump(mode="json", exclude={"id", "created_at"})
        response = await _execute(
            "decision_log_insert",
            lambda: self.client.table("ai_decision_logs").insert(row).execute(),
        )
        return str(response.data[0]["id"])

    async def list_decision_logs(
        self,
        action_type: Optional[str] = None,
        subject_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[DecisionLog], int]:
        start = (page - 1) * limit

        def _query():
            query = (
                self.client.table("ai_decision_logs")
                .select("*", count="exact")
                .order("created_at", desc=True)
            )
            if action_type:
                query = query.eq("action_type", action_type)
            if subject_id:
                query = query.eq("subject_id", subject_id)
            return query.range(start, start + limit - 1).execute()

        response = await _execute("decision_logs_list", _query)
        logs = [
            DecisionLog.model_validate({**row, "id": str(row["id"])})
            for row in (response.data or [])
        ]
        return logs, response.count or 0

    async def count_active_warnings(self, subject_id: str) -> int:
        response = await _execute(
            "warnings_count",
            lambda: (
                self.client.table("ai_warnings")
                .select("id", count="exact")
                .eq("subject_id", subject_id)
                .eq("status", "active")
                .execute()
            ),
        )
        return response.count or 0

    async def insert_warning(self, warning: WarningRecord) -> WarningRecord:
        row = warning.model_dump(mode="json", exclude={"id", "created_at"})
        response = await _execute(
            "warning_insert",
            lambda: self.client.table("ai_warnings").insert(row).execute(),
        )
        inserted = response.data[0]
        return warning.model_copy(update={"id": str(inserted["id"])})

    async def delete_warning(self, warning_id: str) -> None:
        await _execute(
            "warning_delete",
            lambda: self.client.table("ai_warnings").delete().eq("id", warning_id).execute(),
        )

    async def list_warnings(self, subject_id: str) -> List[WarningRecord]:
        response = await _execute(
            "warnings_list",
            lambda: (
                self.client.table("ai_warnings")
                .select("*")
                .eq("subject_id", subject_id)
                .order("created_at", desc=True)
                .execute()
            ),
        )
        return [
            WarningRecord.model_validate({**row, "id": str(row["id"])})
            for row in (response.data or [])
        ]

    async def get_points(self, subject_id: str) -> Optional[int]:
        response = await _execute(
            "profile_points_get",
            lambda: self.client.table("profiles").select("total_points").eq("id", subject_id).limit(1).execute(),
        )
        rows = response.data or []
        if not rows:
            return None
        return rows[0].get("total_points") or 0

    async def set_points(self, subject_id: str, points: int) -> None:
        await _execute(
            "profile_points_set",
            lambda: self.client.table("profiles").update({"total_points": points}).eq("id", subject_id).execute(),
        )
