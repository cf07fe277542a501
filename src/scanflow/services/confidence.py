from typing import Any

from scanflow.domain.timefmt import is_strict_iso
from scanflow.models import AnalysisStage, ConfidenceBreakdown, ConfidenceResult, DocumentKind, RecordBase

MANDATORY_FIELDS: dict[DocumentKind, tuple[str, ...]] = {
    DocumentKind.GIFTICON: ("product_name", "expiry_date"),
    DocumentKind.INVITATION: ("event_date", "event_location"),
    DocumentKind.OBITUARY: ("deceased", "funeral_location", "event_date"),
    DocumentKind.STORE_PAYMENT: ("amount", "merchant", "date"),
    DocumentKind.BANK_TRANSFER: ("amount", "transaction_type"),
    DocumentKind.RECEIPT: ("amount", "merchant", "date"),
    DocumentKind.TRANSFER: ("amount",),
    DocumentKind.BILL: ("amount", "due_date"),
    DocumentKind.SOCIAL: ("amount",),
    DocumentKind.APPOINTMENT: ("title", "location", "date"),
    DocumentKind.UNKNOWN: (),
}

DATE_FIELDS = ("date", "event_date", "expiry_date", "due_date")
AMOUNT_FIELDS = ("amount", "estimated_price")

WEIGHTS = {"ocr": 0.35, "struct": 0.25, "type": 0.20, "consistency": 0.20}

VISION_OCR_SCORE = 0.95
MAX_TEXT_OCR_SCORE = 0.95
UNKNOWN_STRUCT_SCORE = 0.5
WARNING_PENALTY = 0.20
ZERO_AMOUNT_PENALTY = 0.15
DEFAULT_TYPE_SCORE = 0.8
SUBTYPE_BONUS = 0.05
UNKNOWN_TYPE_CAP = 0.4
DATE_FORMAT_PENALTY = 0.15
AMOUNT_SANITY_PENALTY = 0.15
CONSISTENCY_FLOOR = 0.4

MISSING_FIELD_CAP = 0.79
UNKNOWN_CAP = 0.49
VISION_FLOOR = 0.75
VISION_FLOOR_MIN_STRUCT = 0.9


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(high, max(low, value))


def is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, dict)):
        return bool(value)
    return True


def missing_fields(record: RecordBase) -> list[str]:
    required = MANDATORY_FIELDS.get(record.kind, ())
    return [name for name in required if not is_present(getattr(record, name, None))]


def _ocr_axis(ocr_quality: float, stage: AnalysisStage) -> float:
    if stage == AnalysisStage.VISION:
        return VISION_OCR_SCORE
    return min(max(ocr_quality / 100, 0.0), MAX_TEXT_OCR_SCORE)


def _struct_axis(record: RecordBase, missing: list[str]) -> float:
    required = MANDATORY_FIELDS.get(record.kind, ())
    if required:
        struct = (len(required) - len(missing)) / len(required)
    elif record.kind == DocumentKind.UNKNOWN:
        struct = UNKNOWN_STRUCT_SCORE
    else:
        struct = 1.0

    if record.warnings:
        struct -= WARNING_PENALTY
    if record.kind == DocumentKind.STORE_PAYMENT and getattr(record, "amount", None) == 0:
        struct -= ZERO_AMOUNT_PENALTY
    return max(0.0, struct)


def _type_axis(record: RecordBase) -> float:
    type_score = record.confidence or DEFAULT_TYPE_SCORE
    if record.subtype:
        type_score += SUBTYPE_BONUS
    if record.kind == DocumentKind.UNKNOWN:
        type_score = min(type_score, UNKNOWN_TYPE_CAP)
    return _clamp(type_score)


def _consistency_axis(record: RecordBase) -> float:
    consistency = 1.0
    for name in DATE_FIELDS:
        value = getattr(record, name, None)
        if isinstance(value, str) and value and not is_strict_iso(value):
            consistency -= DATE_FORMAT_PENALTY
            break
    for name in AMOUNT_FIELDS:
        value = getattr(record, name, None)
        if isinstance(value, (int, float)) and value <= 0:
            consistency -= AMOUNT_SANITY_PENALTY
            break
    return _clamp(consistency, low=CONSISTENCY_FLOOR)


def score(record: RecordBase, ocr_quality: float, stage: AnalysisStage | str) -> ConfidenceResult:
    """Score a candidate on the ocr, struct, type and consistency axes.

    Deterministic and free of IO. After weighting, a vision result with a
    complete structure is raised to ``VISION_FLOOR``; then a missing mandatory
    field caps the score at ``MISSING_FIELD_CAP`` and ``UNKNOWN`` at
    ``UNKNOWN_CAP``.
    """
    stage = AnalysisStage(stage)
    missing = missing_fields(record)

    ocr = _ocr_axis(ocr_quality, stage)
    struct = _struct_axis(record, missing)
    type_score = _type_axis(record)
    consistency = _consistency_axis(record)

    final = (
        WEIGHTS["ocr"] * ocr
        + WEIGHTS["struct"] * struct
        + WEIGHTS["type"] * type_score
        + WEIGHTS["consistency"] * consistency
    )

    if stage == AnalysisStage.VISION and not missing and struct >= VISION_FLOOR_MIN_STRUCT:
        final = max(final, VISION_FLOOR)
    if missing:
        final = min(final, MISSING_FIELD_CAP)
    if record.kind == DocumentKind.UNKNOWN:
        final = min(final, UNKNOWN_CAP)

    return ConfidenceResult(
        score=round(_clamp(final), 2),
        breakdown=ConfidenceBreakdown(
            ocr=round(ocr, 2),
            struct=round(struct, 2),
            type=round(type_score, 2),
            consistency=round(consistency, 2),
        ),
    )


def apply_confidence(record: RecordBase, result: ConfidenceResult) -> RecordBase:
    return record.model_copy(update={"confidence": result.score, "confidence_breakdown": result.breakdown})
