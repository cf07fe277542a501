import re
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from scanflow.core import settings
from scanflow.extractors.fewshot import normalize_output
from scanflow.integration.image_hash import get_image_hash
from scanflow.integration.store import CORRECTIONS_TABLE, FEWSHOTS_TABLE, USER_EDITS_TABLE, RecordStore
from scanflow.logger import get_logger
from scanflow.models import (
    METADATA_FIELDS,
    AnalysisStage,
    ConfirmationLevel,
    CorrectionItem,
    DocumentKind,
    EditDetectionResult,
    EditType,
    RecordBase,
    coerce_kind,
    parse_candidate,
)
from scanflow.services.confidence import score

logger = get_logger(__name__)

CONFIRMATION_BONUS = 0.05
KIND_CHANGE_BONUS = 0.10
ADD_MISSING_BONUS = 0.07
MAX_CONFIRMED_SCORE = 0.99
MANUAL_ENTRY_SCORE = 1.0

PROMOTION_MIN_CONFIDENCE = 0.90
PROMOTION_MAX_EDITED_FIELDS = 3
PROMOTION_PRIORITY = 1

_IGNORED_FIELDS = set(METADATA_FIELDS) | {"type"}


def _as_payload(record: RecordBase | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(record, RecordBase):
        return record.model_dump(mode="json")
    try:
        return parse_candidate(record).model_dump(mode="json")
    except ValidationError:
        return dict(record)


def _normalize_text(value: str) -> str:
    return re.sub(r"\s+", " ", value.strip())


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").strip())
        except ValueError:
            return None
    return None


def is_different(before: Any, after: Any) -> bool:
    if before == after:
        return False
    if not before and not after:
        return False
    if isinstance(before, str) and isinstance(after, str):
        return _normalize_text(before) != _normalize_text(after)
    before_number = _as_number(before)
    after_number = _as_number(after)
    if before_number is not None and after_number is not None:
        return before_number != after_number
    return True


def detect_edits(
    original: RecordBase | Mapping[str, Any], final: RecordBase | Mapping[str, Any]
) -> EditDetectionResult:
    before = _as_payload(original)
    after = _as_payload(final)

    if coerce_kind(before.get("type")) != coerce_kind(after.get("type")):
        return EditDetectionResult(has_edits=True, edited_fields=["type"], edit_type=EditType.KIND_CHANGE)

    edited = [
        key
        for key in sorted(set(before) | set(after))
        if key not in _IGNORED_FIELDS and is_different(before.get(key), after.get(key))
    ]
    if not edited:
        return EditDetectionResult(has_edits=False)

    missing_in_original = any(not before.get(key) for key in edited)
    return EditDetectionResult(
        has_edits=True,
        edited_fields=edited,
        edit_type=EditType.ADD_MISSING if missing_in_original else EditType.FIELD_FIX,
    )


def recompute_confidence(
    final: RecordBase | Mapping[str, Any],
    edit_type: EditType,
    confirmation_level: ConfirmationLevel,
) -> float:
    """Confidence of a user-confirmed record, treating the user's data as correct."""
    if confirmation_level == ConfirmationLevel.MANUAL_ENTRY:
        return MANUAL_ENTRY_SCORE

    record = final if isinstance(final, RecordBase) else parse_candidate(final)
    verified = record.model_copy(update={"warnings": []})
    base = score(verified, 100.0, AnalysisStage.VISION).score

    bonus = CONFIRMATION_BONUS
    if edit_type == EditType.KIND_CHANGE:
        bonus += KIND_CHANGE_BONUS
    elif edit_type == EditType.ADD_MISSING:
        bonus += ADD_MISSING_BONUS
    return round(min(base + bonus, MAX_CONFIRMED_SCORE), 2)


class FeedbackService:
    def __init__(self, store: RecordStore | None = None, *, promote_unknown_kind_change: bool | None = None):
        self.store = store
        self.promote_unknown_kind_change = (
            settings.promote_unknown_kind_change()
            if promote_unknown_kind_change is None
            else promote_unknown_kind_change
        )

    def _should_promote(
        self,
        original_kind: DocumentKind,
        detection: EditDetectionResult,
        confirmation_level: ConfirmationLevel,
        confidence_after: float,
        raw_text: str | None,
    ) -> bool:
        if confidence_after < PROMOTION_MIN_CONFIDENCE:
            return False
        if len(detection.edited_fields) > PROMOTION_MAX_EDITED_FIELDS:
            return False
        if not raw_text or not raw_text.strip():
            return False
        if (
            original_kind == DocumentKind.UNKNOWN
            and detection.edit_type == EditType.KIND_CHANGE
            and confirmation_level != ConfirmationLevel.MANUAL_ENTRY
            and not self.promote_unknown_kind_change
        ):
            logger.info("[FEEDBACK] Kind change from UNKNOWN is not promoted by policy.")
            return False
        return True

    async def process_user_feedback(
        self,
        original: RecordBase | Mapping[str, Any] | None,
        final: RecordBase | Mapping[str, Any],
        confirmation_level: ConfirmationLevel = ConfirmationLevel.EDITED_CONFIRM,
        *,
        raw_text: str | None = None,
        session_id: str | None = None,
        user_id: str | None = None,
    ) -> None:
        """Log the user's correction and maybe queue it as a few-shot example.

        Never raises: every failure is logged.
        """
        if original is None:
            return

        try:
            confirmation_level = ConfirmationLevel(confirmation_level)
            detection = detect_edits(original, final)
            if not detection.has_edits and confirmation_level != ConfirmationLevel.MANUAL_ENTRY:
                confirmation_level = ConfirmationLevel.QUICK_CONFIRM

            logger.info(
                "[FEEDBACK] Processing %s, edits=%s %s",
                confirmation_level.value,
                detection.edit_type.value,
                detection.edited_fields,
            )

            original_payload = _as_payload(original)
            final_payload = _as_payload(final)
            confidence_before = float(original_payload.get("confidence") or 0.0)
            confidence_after = recompute_confidence(final, detection.edit_type, confirmation_level)
            source_text = raw_text or final_payload.get("raw_text") or original_payload.get("raw_text")

            if self.store is None:
                logger.debug("[FEEDBACK] No record store configured, skipping persistence.")
                return

            await self.store.insert(
                USER_EDITS_TABLE,
                {
                    "session_id": session_id or "unknown-session",
                    "user_id": user_id,
                    "original_result": original_payload,
                    "edited_result": final_payload,
                    "edited_fields": detection.edited_fields,
                    "edit_type": detection.edit_type.value,
                    "confirmation_level": confirmation_level.value,
                    "confidence_before": confidence_before,
                    "confidence_after": confidence_after,
                },
            )
            logger.info("[FEEDBACK] Edit log saved (confidence %.2f -> %.2f).", confidence_before, confidence_after)

            original_kind = coerce_kind(original_payload.get("type"))
            if self._should_promote(original_kind, detection, confirmation_level, confidence_after, source_text):
                await self.store.insert(
                    FEWSHOTS_TABLE,
                    {
                        "document_type": coerce_kind(final_payload.get("type")).value,
                        "input_text": source_text,
                        "output_json": normalize_output(final_payload),
                        "priority": PROMOTION_PRIORITY,
                        "is_active": False,
                    },
                )
                logger.info("[FEEDBACK] Queued few-shot candidate (pending approval).")
        except Exception:
            logger.exception("[FEEDBACK] Error processing feedback.")

    async def log_corrections(
        self,
        corrections: list[CorrectionItem],
        *,
        session_id: str | None = None,
        image_base64: str | None = None,
        source: str | None = None,
        user_id: str | None = None,
    ) -> int:
        """Write per-item corrections of one scan. Raises ``StoreError`` on failure."""
        if not corrections or self.store is None:
            return 0

        image_hash = get_image_hash(image_base64)
        rows = [
            {
                "session_id": session_id,
                "user_id": user_id,
                "image_hash": image_hash,
                "source": source or "scan_result",
                "item_index": item.item_index,
                "was_selected": item.was_selected,
                "original_data": item.original_data,
                "corrected_data": item.corrected_data,
            }
            for item in corrections
        ]
        await self.store.insert(CORRECTIONS_TABLE, rows)
        logger.info("[FEEDBACK] Logged %d correction(s) for session %s.", len(rows), session_id)
        return len(rows)
