"""Operator access to the engine settings row."""
from typing import Optional

from app.core.logging import get_logger
from app.services.ai.audit import DecisionLogger
from app.services.ai.schema import DecisionLog, EngineSettings, EngineSettingsUpdate
from app.services.storage.base import RecordStore

logger = get_logger(__name__)


class SettingsService:
    def __init__(self, record_store: RecordStore, decision_logger: DecisionLogger):
        self.record_store = record_store
        self.decision_logger = decision_logger

    async def get_settings(self) -> EngineSettings:
        return await self.record_store.get_engine_settings()

    async def update_settings(
        self,
        update: EngineSettingsUpdate,
        updated_by: Optional[str] = None,
    ) -> EngineSettings:
        """Apply the fields set on ``update`` and audit-log the change."""
        changes = update.model_dump(exclude_unset=True)
        current = await self.record_store.get_engine_settings()
        if not changes:
            return current

        merged = EngineSettings.model_validate({**current.model_dump(), **changes})
        saved = await self.record_store.update_engine_settings(merged)

        changed_fields = ", ".join(sorted(changes))
        await self.decision_logger.record(DecisionLog(
            action_type="settings_updated",
            input_summary="AI settings updated by operator",
            output_summary=f"Updated fields: {changed_fields}",
            triggered_by=updated_by,
            is_autonomous=False,
        ))
        logger.info("engine_settings_updated", fields=sorted(changes), updated_by=updated_by)
        return saved
