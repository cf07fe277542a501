import re
from datetime import datetime

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}( \d{2}:\d{2})?$")

_DOTTED_DATE = re.compile(
    r"^(\d{4})\s*[./-]\s*(\d{1,2})\s*[./-]\s*(\d{1,2})\.?(?:\s*\(?[월화수목금토일]\)?)?(?:\s+(\d{1,2}):(\d{2}))?$"
)
_KOREAN_DATE = re.compile(
    r"^(\d{4})년\s*(\d{1,2})월\s*(\d{1,2})일(?:\s*\(?[월화수목금토일]\)?)?(?:\s+(\d{1,2}):(\d{2}))?$"
)


def format_duration(seconds: float) -> str:
    if seconds <= 0:
        return "0 ms"
    if seconds < 1:
        return f"{seconds * 1000:.1f} ms"
    if seconds < 60:
        return f"{seconds:.2f} s"
    return f"{seconds / 60:.2f} min"


def is_strict_iso(value: str) -> bool:
    return bool(ISO_DATE_PATTERN.match(value))


def _format_parts(year: str, month: str, day: str, hour: str | None, minute: str | None) -> str | None:
    try:
        parsed = datetime(int(year), int(month), int(day), int(hour or 0), int(minute or 0))
    except ValueError:
        return None
    if hour is None:
        return parsed.strftime("%Y-%m-%d")
    return parsed.strftime("%Y-%m-%d %H:%M")


def normalize_date_value(value: object) -> object:
    """Rewrite common absolute date spellings to ``YYYY-MM-DD[ HH:mm]``.

    Anything that is not recognisably an absolute date is returned unchanged.
    """
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text or is_strict_iso(text):
        return text or None

    for pattern in (_DOTTED_DATE, _KOREAN_DATE):
        match = pattern.match(text)
        if match:
            formatted = _format_parts(*match.groups())
            return formatted if formatted else value

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return value
    if "T" in text or ":" in text:
        return parsed.strftime("%Y-%m-%d %H:%M")
    return parsed.strftime("%Y-%m-%d")
