import re
from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, field_validator

from scanflow.domain.timefmt import normalize_date_value


class DocumentKind(str, Enum):
    STORE_PAYMENT = "STORE_PAYMENT"
    BANK_TRANSFER = "BANK_TRANSFER"
    INVITATION = "INVITATION"
    OBITUARY = "OBITUARY"
    GIFTICON = "GIFTICON"
    BILL = "BILL"
    SOCIAL = "SOCIAL"
    APPOINTMENT = "APPOINTMENT"
    RECEIPT = "RECEIPT"
    TRANSFER = "TRANSFER"
    UNKNOWN = "UNKNOWN"


class SourceMedium(str, Enum):
    SCREENSHOT = "SCREENSHOT"
    PHOTO = "PHOTO"
    UNKNOWN = "UNKNOWN"


class AnalysisStage(str, Enum):
    TEXT = "text"
    VISION = "vision"
    REGEX = "regex"


class EditType(str, Enum):
    NONE = "none"
    FIELD_FIX = "field_fix"
    KIND_CHANGE = "type_change"
    ADD_MISSING = "add_missing"


class ConfirmationLevel(str, Enum):
    QUICK_CONFIRM = "quick_confirm"
    EDITED_CONFIRM = "edited_confirm"
    MANUAL_ENTRY = "manual_entry"


def coerce_amount(value: Any) -> Any:
    if value is None or isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        cleaned = re.sub(r"[,\s원₩]|KRW", "", value)
        if not cleaned:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


Amount = Annotated[float | None, BeforeValidator(coerce_amount)]
DateText = Annotated[str | None, BeforeValidator(normalize_date_value)]
Text = Annotated[str | None, BeforeValidator(_blank_to_none)]


class ConfidenceBreakdown(BaseModel):
    ocr: float = Field(ge=0.0, le=1.0)
    struct: float = Field(ge=0.0, le=1.0)
    type: float = Field(ge=0.0, le=1.0)
    consistency: float = Field(ge=0.0, le=1.0)


class RecordBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    confidence: float = 0.0
    evidence: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    source: SourceMedium | None = None
    subtype: Text = None
    raw_text: str | None = None
    confidence_breakdown: ConfidenceBreakdown | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        if value is None:
            return 0.0
        number = float(value)
        return min(1.0, max(0.0, number))

    @field_validator("evidence", "warnings", mode="before")
    @classmethod
    def _coerce_text_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return [str(item) for item in value if item is not None and str(item).strip()]

    @field_validator("source", mode="before")
    @classmethod
    def _coerce_source(cls, value: Any) -> SourceMedium | None:
        if value is None or isinstance(value, SourceMedium):
            return value
        try:
            return SourceMedium(str(value).strip().upper())
        except ValueError:
            return SourceMedium.UNKNOWN

    @property
    def kind(self) -> DocumentKind:
        return DocumentKind(self.type)


class StorePaymentRecord(RecordBase):
    type: Literal["STORE_PAYMENT"] = "STORE_PAYMENT"
    merchant: Text = None
    amount: Amount = None
    currency: Text = None
    date: DateText = None
    category: Text = None
    sub_category: Text = None
    memo: Text = None


class ReceiptRecord(RecordBase):
    type: Literal["RECEIPT"] = "RECEIPT"
    merchant: Text = None
    amount: Amount = None
    date: DateText = None
    category: Text = None
    sub_category: Text = None
    memo: Text = None


_TRANSACTION_DIRECTIONS = {
    "deposit": "deposit",
    "입금": "deposit",
    "in": "deposit",
    "withdrawal": "withdrawal",
    "withdraw": "withdrawal",
    "출금": "withdrawal",
    "out": "withdrawal",
}


class BankTransferRecord(RecordBase):
    type: Literal["BANK_TRANSFER"] = "BANK_TRANSFER"
    amount: Amount = None
    transaction_type: Literal["deposit", "withdrawal"] | None = None
    target_name: Text = None
    date: DateText = None
    balance_after: Amount = None
    is_utility: bool = False
    category: Text = None
    sub_category: Text = None
    memo: Text = None

    @field_validator("transaction_type", mode="before")
    @classmethod
    def _coerce_direction(cls, value: Any) -> str | None:
        if value is None:
            return None
        return _TRANSACTION_DIRECTIONS.get(str(value).strip().lower())

    @field_validator("is_utility", mode="before")
    @classmethod
    def _coerce_utility(cls, value: Any) -> bool:
        return bool(value)


class TransferRecord(RecordBase):
    type: Literal["TRANSFER"] = "TRANSFER"
    amount: Amount = None
    is_received: bool | None = None
    sender_name: Text = None
    date: DateText = None
    memo: Text = None


class InvitationRecord(RecordBase):
    type: Literal["INVITATION"] = "INVITATION"
    event_type: Text = None
    event_date: DateText = None
    event_location: Text = None
    main_name: Text = None
    sender_name: Text = None
    account_number: Text = None
    recommended_amount: Amount = None
    recommendation_reason: Text = None
    relation: Text = None


class ObituaryRecord(RecordBase):
    type: Literal["OBITUARY"] = "OBITUARY"
    deceased: Text = None
    funeral_location: Text = None
    event_date: DateText = None
    main_name: Text = None
    account_number: Text = None
    recommended_amount: Amount = None


class GifticonRecord(RecordBase):
    type: Literal["GIFTICON"] = "GIFTICON"
    product_name: Text = None
    brand_name: Text = None
    estimated_price: Amount = None
    expiry_date: DateText = None
    barcode_number: Text = None
    sender_name: Text = None


class BillRecord(RecordBase):
    type: Literal["BILL"] = "BILL"
    title: Text = None
    amount: Amount = None
    due_date: DateText = None
    virtual_account: Text = None


class SocialRecord(RecordBase):
    type: Literal["SOCIAL"] = "SOCIAL"
    amount: Amount = None
    location: Text = None
    members: list[str] = Field(default_factory=list)
    date: DateText = None

    @field_validator("members", mode="before")
    @classmethod
    def _coerce_members(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return [str(item) for item in value if item]


class AppointmentRecord(RecordBase):
    type: Literal["APPOINTMENT"] = "APPOINTMENT"
    title: Text = None
    location: Text = None
    date: DateText = None
    memo: Text = None


class UnknownRecord(RecordBase):
    type: Literal["UNKNOWN"] = "UNKNOWN"


CandidateRecord = Annotated[
    Union[
        StorePaymentRecord,
        ReceiptRecord,
        BankTransferRecord,
        TransferRecord,
        InvitationRecord,
        ObituaryRecord,
        GifticonRecord,
        BillRecord,
        SocialRecord,
        AppointmentRecord,
        UnknownRecord,
    ],
    Field(discriminator="type"),
]

RECORD_MODELS: dict[DocumentKind, type[RecordBase]] = {
    DocumentKind.STORE_PAYMENT: StorePaymentRecord,
    DocumentKind.RECEIPT: ReceiptRecord,
    DocumentKind.BANK_TRANSFER: BankTransferRecord,
    DocumentKind.TRANSFER: TransferRecord,
    DocumentKind.INVITATION: InvitationRecord,
    DocumentKind.OBITUARY: ObituaryRecord,
    DocumentKind.GIFTICON: GifticonRecord,
    DocumentKind.BILL: BillRecord,
    DocumentKind.SOCIAL: SocialRecord,
    DocumentKind.APPOINTMENT: AppointmentRecord,
    DocumentKind.UNKNOWN: UnknownRecord,
}

METADATA_FIELDS = ("confidence", "confidence_breakdown", "warnings", "raw_text", "evidence")

# Every field a model answer may carry once metadata is stripped.
OUTPUT_FIELDS: frozenset[str] = frozenset(
    name
    for model in RECORD_MODELS.values()
    for name in model.model_fields
    if name not in METADATA_FIELDS
)

_COMMON_ALIASES = {
    "merchant_name": "merchant",
    "date_or_datetime": "date",
    "place_name": "location",
    "sender": "sender_name",
    "sender_nickname": "sender_name",
    "counterparty": "target_name",
    "direction": "transaction_type",
    "host_names": "main_name",
}

FIELD_ALIASES: dict[DocumentKind, dict[str, str]] = {
    DocumentKind.INVITATION: {
        "date": "event_date",
        "location": "event_location",
        "host": "main_name",
        "memo": "recommendation_reason",
        "account": "account_number",
    },
    DocumentKind.OBITUARY: {
        "date": "event_date",
        "location": "funeral_location",
        "event_location": "funeral_location",
        "host": "main_name",
        "account": "account_number",
    },
    DocumentKind.GIFTICON: {
        "date": "expiry_date",
        "merchant": "brand_name",
        "amount": "estimated_price",
    },
    DocumentKind.BILL: {
        "date": "due_date",
        "bill_name": "title",
        "account": "virtual_account",
    },
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

_CANDIDATE_ADAPTER: TypeAdapter[Any] = TypeAdapter(CandidateRecord)


def _to_snake(key: str) -> str:
    if key.isupper() or "_" in key:
        return key.lower() if key.isupper() else key
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def coerce_kind(value: Any) -> DocumentKind:
    if isinstance(value, DocumentKind):
        return value
    try:
        return DocumentKind(str(value or "").strip().upper())
    except ValueError:
        return DocumentKind.UNKNOWN


def _apply_aliases(payload: dict[str, Any], aliases: Mapping[str, str]) -> None:
    for source, target in aliases.items():
        if source in payload and source != target:
            value = payload.pop(source)
            if payload.get(target) in (None, ""):
                payload[target] = value


def parse_candidate(data: Mapping[str, Any] | RecordBase) -> RecordBase:
    """Build the typed record for one extraction item.

    Accepts the flat shape and the nested ``{"type": ..., "data": {...}}``
    shape, camelCase keys and legacy field names. Raises
    ``pydantic.ValidationError`` when a field has an impossible value.
    """
    if isinstance(data, RecordBase):
        return data

    payload: dict[str, Any] = {}
    for key, value in data.items():
        if key != "data":
            payload[_to_snake(str(key))] = value
    nested = data.get("data")
    if isinstance(nested, Mapping):
        for key, value in nested.items():
            payload[_to_snake(str(key))] = value

    kind = coerce_kind(payload.get("type"))
    payload["type"] = kind.value
    _apply_aliases(payload, _COMMON_ALIASES)
    _apply_aliases(payload, FIELD_ALIASES.get(kind, {}))
    if isinstance(payload.get("main_name"), list):
        payload["main_name"] = ", ".join(str(name) for name in payload["main_name"] if name)
    return _CANDIDATE_ADAPTER.validate_python(payload)


class ConfidenceResult(BaseModel):
    score: float
    breakdown: ConfidenceBreakdown


class EditDetectionResult(BaseModel):
    has_edits: bool
    edited_fields: list[str] = Field(default_factory=list)
    edit_type: EditType = EditType.NONE


class FewShotExample(BaseModel):
    document_type: str
    input_text: str
    output_json: dict[str, Any]
    priority: int = 1
    is_active: bool = False


class AnalysisOutcome(BaseModel):
    record: CandidateRecord
    candidates: list[CandidateRecord] = Field(default_factory=list)
    stage: AnalysisStage
    session_id: str | None = None


class CorrectionItem(BaseModel):
    item_index: int
    original_data: dict[str, Any] | None = None
    corrected_data: dict[str, Any]
    was_selected: bool = True
