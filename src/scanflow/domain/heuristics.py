import re
from dataclasses import dataclass, field
from datetime import date

from scanflow.models import DocumentKind, RecordBase, SourceMedium, UnknownRecord

AMOUNT_PATTERN = re.compile(r"(?:₩\s*)?(?<![\d,])(\d{1,3}(?:,\d{3})+|\d+)\s*(?:원|KRW)|₩\s*(\d{1,3}(?:,\d{3})+|\d+)")
GROUPED_NUMBER_PATTERN = re.compile(r"(?<![\d,])\d{1,3}(?:,\d{3})+(?![\d,])")
YEAR_PATTERN = re.compile(r"(?<!\d)(?:199\d|20\d{2})(?!\d)")
DATE_PATTERN = re.compile(
    r"(?<!\d)(\d{4})\s*[./-]\s*(\d{1,2})\s*[./-]\s*(\d{1,2})(?!\d)"
    r"|(?<!\d)(\d{4})년\s*(\d{1,2})월\s*(\d{1,2})일"
)
SHORT_DATE_PATTERN = re.compile(r"(?<![\d/.\-])\d{1,2}/\d{1,2}(?![\d/])")
BARCODE_PATTERN = re.compile(r"(?<!\d)\d{4}[\s-]?\d{4}[\s-]?\d{4}(?:[\s-]?\d{1,4})?(?!\d)")

WORTH_IT_KEYWORDS = (
    "결제",
    "승인",
    "주문",
    "예약",
    "초대",
    "청첩",
    "결혼",
    "부고",
    "입금",
    "출금",
    "이체",
    "송금",
    "영수증",
    "유효기간",
    "교환권",
    "납부",
    "payment",
    "approved",
    "order",
    "reservation",
    "invitation",
)

VALIDITY_KEYWORDS = ("유효기간", "기간", "까지", "Date")

FALLBACK_CONFIDENCE = 0.1
REGEX_FALLBACK_WARNING = "regex_fallback"


@dataclass
class FallbackGuess:
    date: str | None = None
    amount: float | None = None
    barcode: str | None = None
    snippets: list[str] = field(default_factory=list)


def is_worth_vision(text: str | None) -> bool:
    """True when the raw text shows enough signal to justify a vision call."""
    if not text or not text.strip():
        return False
    if AMOUNT_PATTERN.search(text) or GROUPED_NUMBER_PATTERN.search(text):
        return True
    if YEAR_PATTERN.search(text):
        return True
    lowered = text.lower()
    return any(keyword in lowered for keyword in WORTH_IT_KEYWORDS)


def needs_vision_fallback(record: RecordBase | None, threshold: float) -> bool:
    if record is None:
        return True
    if record.kind == DocumentKind.UNKNOWN:
        return True
    if record.warnings:
        return True
    return record.confidence < threshold


def _iso_from_match(match: re.Match) -> str | None:
    year, month, day = (match.group(1), match.group(2), match.group(3))
    if year is None:
        year, month, day = (match.group(4), match.group(5), match.group(6))
    try:
        return date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None


def find_unique_dates(text: str) -> list[str]:
    """Absolute dates in order of first appearance, as ``YYYY-MM-DD``."""
    seen: list[str] = []
    for match in DATE_PATTERN.finditer(text):
        value = _iso_from_match(match)
        if value and value not in seen:
            seen.append(value)
    return seen


def guess_expiry_date(text: str) -> str | None:
    """First date after a validity keyword, else the latest date in the text."""
    dates = find_unique_dates(text)
    if not dates:
        return None
    for keyword in VALIDITY_KEYWORDS:
        index = text.find(keyword)
        if index < 0:
            continue
        following = find_unique_dates(text[index:])
        if following:
            return following[0]
    return max(dates)


def parse_amount(raw: str) -> float | None:
    digits = raw.replace(",", "").strip()
    if not digits:
        return None
    try:
        return float(digits)
    except ValueError:
        return None


def guess_fields(text: str) -> FallbackGuess:
    guess = FallbackGuess()
    if not text:
        return guess

    guess.date = guess_expiry_date(text)
    if guess.date:
        guess.snippets.append(guess.date)

    amount_match = AMOUNT_PATTERN.search(text)
    if amount_match:
        guess.amount = parse_amount(amount_match.group(1) or amount_match.group(2))
        guess.snippets.append(amount_match.group(0).strip())

    barcode_match = BARCODE_PATTERN.search(text)
    if barcode_match and len(re.sub(r"[\s-]", "", barcode_match.group(0))) >= 12:
        guess.barcode = barcode_match.group(0)
    return guess


def regex_fallback(text: str | None, source: SourceMedium | None = None) -> UnknownRecord:
    """Last-resort record built from pattern matches on the raw text.

    The date and amount guesses are kept as evidence; the record itself is
    always ``UNKNOWN`` with a very low confidence.
    """
    raw = text or ""
    guess = guess_fields(raw)
    warnings = [REGEX_FALLBACK_WARNING]
    if guess.date is None:
        warnings.append("no_date_found")
    if guess.amount is None:
        warnings.append("no_amount_found")
    return UnknownRecord(
        confidence=FALLBACK_CONFIDENCE,
        evidence=guess.snippets,
        warnings=warnings,
        source=source,
        raw_text=raw or None,
    )


def estimate_ocr_quality(text: str | None) -> float:
    """Score raw OCR text from 0 to 100 by length, digits, dates and money hits."""
    if not text or not text.strip():
        return 0.0
    trimmed = text.strip()
    digit_count = sum(1 for char in trimmed if char.isdigit())
    date_hits = len(DATE_PATTERN.findall(trimmed)) + len(SHORT_DATE_PATTERN.findall(trimmed))
    money_hits = len(AMOUNT_PATTERN.findall(trimmed)) + len(GROUPED_NUMBER_PATTERN.findall(trimmed))
    raw_score = len(trimmed) + digit_count * 2 + date_hits * 10 + money_hits * 5
    return float(min(100, raw_score))
