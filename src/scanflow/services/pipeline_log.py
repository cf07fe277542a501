import uuid
from time import perf_counter
from typing import Any

from pydantic import BaseModel, Field

from scanflow.domain.timefmt import format_duration
from scanflow.errors import StoreError
from scanflow.integration.store import PIPELINE_LOGS_TABLE, RecordStore
from scanflow.logger import get_logger

logger = get_logger(__name__)

STAGE_COSTS_USD = {
    "text": 0.0005,
    "vision": 0.005,
}


class StageLogEntry(BaseModel):
    stage: str
    stage_order: int
    success: bool
    fallback_reason: str | None = None
    image_hash: str | None = None
    doc_type_predicted: str | None = None
    confidence: float | None = None
    processing_time_ms: int = 0
    retry_count: int = 0
    cost_estimated_usd: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PipelineLogger:
    """Per-request record of pipeline stages, flushed to the record store at the end."""

    def __init__(self, store: RecordStore | None = None, session_id: str | None = None, user_id: str | None = None):
        self.store = store
        self.session_id = session_id or str(uuid.uuid4())
        self.user_id = user_id
        self.image_hash: str | None = None
        self.entries: list[StageLogEntry] = []
        self._started_at = perf_counter()

    def start_session(self, image_hash: str | None = None, text_length: int | None = None) -> None:
        self.image_hash = image_hash
        self._started_at = perf_counter()
        logger.info(
            "[PIPELINE] Session %s started (image_hash=%s, text_length=%s).",
            self.session_id,
            image_hash[:12] if image_hash else None,
            text_length,
        )

    def log_stage(
        self,
        stage: str,
        *,
        success: bool,
        fallback_reason: str | None = None,
        doc_type: str | None = None,
        confidence: float | None = None,
        elapsed: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StageLogEntry:
        entry = StageLogEntry(
            stage=stage,
            stage_order=len(self.entries) + 1,
            success=success,
            fallback_reason=fallback_reason,
            image_hash=self.image_hash,
            doc_type_predicted=doc_type,
            confidence=confidence,
            processing_time_ms=int((elapsed or 0.0) * 1000),
            cost_estimated_usd=STAGE_COSTS_USD.get(stage),
            metadata=metadata or {},
        )
        self.entries.append(entry)
        logger.info(
            "[PIPELINE] %s #%d %s in %s (type=%s, confidence=%s, reason=%s)",
            stage,
            entry.stage_order,
            "ok" if success else "failed",
            format_duration(elapsed or 0.0),
            doc_type,
            confidence,
            fallback_reason,
        )
        return entry

    @property
    def total_cost_usd(self) -> float:
        return round(sum(entry.cost_estimated_usd or 0.0 for entry in self.entries), 6)

    def elapsed(self) -> float:
        return perf_counter() - self._started_at

    async def flush(self) -> None:
        if not self.entries:
            return
        if self.store is None:
            logger.debug("[PIPELINE] No record store configured, dropping %d entries.", len(self.entries))
            self.entries.clear()
            return

        rows = [
            {
                "session_id": self.session_id,
                "user_id": self.user_id,
                **entry.model_dump(),
            }
            for entry in self.entries
        ]
        try:
            await self.store.insert(PIPELINE_LOGS_TABLE, rows)
        except StoreError as e:
            logger.warning("[PIPELINE] Failed to save %d log entries: %s", len(rows), e)
            return
        logger.info(
            "[PIPELINE] Saved %d log entries for session %s (total %s, est. $%.4f).",
            len(rows),
            self.session_id,
            format_duration(self.elapsed()),
            self.total_cost_usd,
        )
        self.entries.clear()
