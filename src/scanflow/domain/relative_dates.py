import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from scanflow.logger import get_logger

logger = get_logger(__name__)

_TIME_SUFFIX = r"(?:\s+(?P<hour>\d{1,2}):(?P<minute>\d{2}))?"

_FULL_DATE = re.compile(
    r"(?<!\d)(?P<year>\d{4})\s*[-./]\s*(?P<month>\d{1,2})\s*[-./]\s*(?P<day>\d{1,2})(?!\d)" + _TIME_SUFFIX
)
_KOREAN_FULL_DATE = re.compile(
    r"(?<!\d)(?P<year>\d{4})\s*년\s*(?P<month>\d{1,2})\s*월\s*(?P<day>\d{1,2})\s*일" + _TIME_SUFFIX
)
_KOREAN_MONTH_DAY = re.compile(
    r"(?<!\d)(?P<month>\d{1,2})\s*월\s*(?P<day>\d{1,2})\s*일" + _TIME_SUFFIX
)
_SLASH_MONTH_DAY = re.compile(
    r"(?<![\d/.\-])(?P<month>\d{1,2})/(?P<day>\d{1,2})(?![\d/])" + _TIME_SUFFIX
)

_ANCHOR_PATTERNS = (_FULL_DATE, _KOREAN_FULL_DATE, _KOREAN_MONTH_DAY, _SLASH_MONTH_DAY)

_WEEKDAYS = "월화수목금토일"

_RELATIVE_WORDS = {
    "그끄저께": -3,
    "그끄제": -3,
    "엊그제": -2,
    "그저께": -2,
    "그제": -2,
    "어저께": -1,
    "어제": -1,
    "전일": -1,
    "오늘": 0,
    "금일": 0,
    "방금": 0,
    "내일": 1,
    "명일": 1,
    "모레": 2,
    "글피": 3,
}

_WEEK_SHIFTS = {
    "지난주": -7,
    "지난": -7,
    "이번주": 0,
    "이번": 0,
    "다음주": 7,
    "다음": 7,
}

# Longer words come first so that e.g. 그끄저께 is not read as 그저께.
_WORD_ALTERNATION = "|".join(
    sorted((re.escape(word) for word in _RELATIVE_WORDS), key=len, reverse=True)
)

# Particles that may follow "N일 후" without making it part of a longer word.
_PARTICLE_ALTERNATION = "|".join(("에는", "에도", "에", "인", "의", "까지", "부터"))

_RELATIVE_PATTERN = re.compile(
    r"(?P<weekday>(?:(?P<week>지난\s*주|이번\s*주|다음\s*주|지난|이번|다음)\s*)?(?P<wd>[월화수목금토일])요일)"
    r"|(?P<count>(?<!\d)\d{1,3})\s*일\s*(?P<direction>전|후|뒤)"
    rf"(?=(?:{_PARTICLE_ALTERNATION})?(?![가-힣]))"
    r"|(?P<recent>방금\s*전)"
    rf"|(?P<word>{_WORD_ALTERNATION})"
)


@dataclass
class MessageBlock:
    """A run of non-blank lines and the dates its relative expressions resolve against."""

    text: str
    anchor: datetime | None = None
    header: date | None = None
    resolved: str = ""


def _as_datetime(value: datetime | date | None) -> datetime:
    if value is None:
        return datetime.now()
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


def split_segments(text: str) -> list[tuple[str, bool]]:
    """Split text into alternating content blocks and blank separators.

    Each item is ``(segment_text, is_block)``; joining the segment texts gives
    back the input unchanged.
    """
    segments: list[tuple[str, bool]] = []
    current: list[str] = []
    current_is_block = False
    for line in text.splitlines(keepends=True):
        is_block = bool(line.strip())
        if current and is_block != current_is_block:
            segments.append(("".join(current), current_is_block))
            current = []
        current.append(line)
        current_is_block = is_block
    if current:
        segments.append(("".join(current), current_is_block))
    return segments


def _resolve_year(month: int, day: int, now: datetime, prefer_past: bool) -> date | None:
    today = now.date()
    candidates: list[date] = []
    for year in (today.year - 1, today.year, today.year + 1):
        try:
            candidates.append(date(year, month, day))
        except ValueError:
            continue
    if not candidates:
        return None

    if prefer_past:
        past = [candidate for candidate in candidates if candidate <= today]
        if past:
            return max(past)

    # Nearest occurrence; on equal distance the past one wins.
    return min(candidates, key=lambda candidate: (abs((candidate - today).days), candidate > today))


def _anchor_from_match(match: re.Match, now: datetime, prefer_past: bool) -> datetime | None:
    groups = match.groupdict()
    month = int(groups["month"])
    day = int(groups["day"])
    if groups.get("year"):
        try:
            anchor_date = date(int(groups["year"]), month, day)
        except ValueError:
            return None
    else:
        anchor_date = _resolve_year(month, day, now, prefer_past)
        if anchor_date is None:
            return None

    hour = minute = 0
    if groups.get("hour") is not None:
        hour = int(groups["hour"])
        minute = int(groups["minute"])
        if hour > 23 or minute > 59:
            hour = minute = 0
    return datetime(anchor_date.year, anchor_date.month, anchor_date.day, hour, minute)


def find_anchor(block_text: str, now: datetime | date | None = None, prefer_past: bool = False) -> datetime | None:
    """Return the first explicit date in the block, or ``None`` if it has none."""
    reference = _as_datetime(now)
    found: list[tuple[int, datetime]] = []
    for pattern in _ANCHOR_PATTERNS:
        for match in pattern.finditer(block_text):
            anchor = _anchor_from_match(match, reference, prefer_past)
            if anchor is not None:
                found.append((match.start(), anchor))
                break
    if not found:
        return None
    return min(found, key=lambda item: item[0])[1]


def _weekday_date(base: date, target: int, week: str | None) -> date:
    if week is None:
        return base - timedelta(days=(base.weekday() - target) % 7)
    monday = base - timedelta(days=base.weekday())
    shift = _WEEK_SHIFTS[re.sub(r"\s+", "", week)]
    return monday + timedelta(days=shift + target)


def _is_date_annotation(text: str, start: int) -> bool:
    before = text[:start].rstrip(" \t(")
    return bool(before) and (before[-1].isdigit() or before[-1] == "일")


def _resolve_match(match: re.Match, base: date) -> date | None:
    text = match.string
    if match.group("weekday"):
        week = match.group("week")
        if week is None and _is_date_annotation(text, match.start()):
            return None
        return _weekday_date(base, _WEEKDAYS.index(match.group("wd")), week)

    if match.group("count"):
        if text[: match.start()].rstrip().endswith("월"):
            return None
        days = int(match.group("count"))
        sign = -1 if match.group("direction") == "전" else 1
        return base + timedelta(days=sign * days)

    if match.group("recent"):
        return base

    return base + timedelta(days=_RELATIVE_WORDS[match.group("word")])


def resolve_block(block_text: str, now: datetime, prefer_past: bool = False) -> MessageBlock:
    """Resolve one block against its own anchor, or ``now`` when it has none."""
    anchor = find_anchor(block_text, now, prefer_past)
    base = (anchor or now).date()
    first_line_end = block_text.find("\n")
    if first_line_end < 0:
        first_line_end = len(block_text)
    block = MessageBlock(text=block_text, anchor=anchor)

    def replace(match: re.Match) -> str:
        resolved = _resolve_match(match, base)
        if resolved is None:
            return match.group(0)
        if block.header is None and match.start() < first_line_end:
            block.header = resolved
        return resolved.strftime("%Y-%m-%d")

    block.resolved = _RELATIVE_PATTERN.sub(replace, block_text)
    return block


def resolve_relative_dates(
    text: str, *, now: datetime | date | None = None, prefer_past: bool = False
) -> str:
    """Rewrite relative date expressions into ``YYYY-MM-DD``, block by block.

    A block is a maximal run of non-blank lines. Expressions in a block are
    offset from the first explicit date found anywhere in that block, or from
    ``now`` when the block has none. Everything else is kept verbatim.
    """
    if not text:
        return text

    reference = _as_datetime(now)
    parts: list[str] = []
    for segment, is_block in split_segments(text):
        if not is_block:
            parts.append(segment)
            continue
        block = resolve_block(segment, reference, prefer_past)
        if block.resolved != block.text:
            logger.debug("[RESOLVE] Block anchor=%s header=%s.", block.anchor, block.header)
        parts.append(block.resolved)

    result = "".join(parts)
    if result != text:
        logger.debug("[RESOLVE] Rewrote relative dates (now=%s, prefer_past=%s).", reference.date(), prefer_past)
    return result
