"""Calendar helpers: time-of-day buckets, date normalization, spoken formats.

``normalize_date`` is the deterministic first pass for turning a spoken
date into a calendar date.  It covers the phrases patients actually use
("tomorrow", "next Tuesday", "March 3rd", "3/14"); anything it cannot
read returns ``None`` and the caller may ask the text matcher instead.

Weekday rules:
  * a bare weekday or "this <weekday>" is the next occurrence on or
    after today (today counts);
  * "next <weekday>" is the next occurrence strictly after today, so
    saying "next Wednesday" on a Wednesday means one week out.

Bare month/day phrases roll forward: "January 5" said in December is
January 5 of the following year.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from enum import Enum
from zoneinfo import ZoneInfo


class TimeBucket(str, Enum):
    EARLY = "EARLY"
    MORNING = "MORNING"
    MIDDAY = "MIDDAY"
    AFTERNOON = "AFTERNOON"
    EVENING = "EVENING"
    LATE = "LATE"
    ALL_DAY = "ALL_DAY"


# Local start (inclusive) / end (exclusive) per bucket.  Buckets overlap:
# "midday" and "afternoon" both cover 12:00–15:00.
BUCKET_RANGES: dict[TimeBucket, tuple[time, time]] = {
    TimeBucket.EARLY: (time(5, 0), time(8, 30)),
    TimeBucket.MORNING: (time(5, 0), time(12, 0)),
    TimeBucket.MIDDAY: (time(10, 0), time(15, 0)),
    TimeBucket.AFTERNOON: (time(12, 0), time(17, 0)),
    TimeBucket.EVENING: (time(15, 30), time(20, 0)),
    TimeBucket.LATE: (time(17, 0), time(22, 0)),
    TimeBucket.ALL_DAY: (time(5, 0), time(22, 0)),
}

_BUCKET_WORDS: list[tuple[re.Pattern[str], TimeBucket]] = [
    (re.compile(r"\b(all[ _-]?day|any ?time|whenever)\b"), TimeBucket.ALL_DAY),
    (re.compile(r"\b(first thing|early)\b"), TimeBucket.EARLY),
    (re.compile(r"\bmornings?\b"), TimeBucket.MORNING),
    (re.compile(r"\b(midday|mid-day|noon|lunch ?time)\b"), TimeBucket.MIDDAY),
    (re.compile(r"\bafternoons?\b"), TimeBucket.AFTERNOON),
    (re.compile(r"\b(evenings?|after work)\b"), TimeBucket.EVENING),
    (re.compile(r"\blate\b"), TimeBucket.LATE),
]

BUCKET_LABELS: dict[TimeBucket, str] = {
    TimeBucket.EARLY: "early morning",
    TimeBucket.MORNING: "morning",
    TimeBucket.MIDDAY: "midday",
    TimeBucket.AFTERNOON: "afternoon",
    TimeBucket.EVENING: "evening",
    TimeBucket.LATE: "late",
    TimeBucket.ALL_DAY: "all-day",
}


def parse_time_bucket(text: str | None) -> TimeBucket | None:
    """Map a bucket name or a spoken preference ("mornings") to a bucket."""
    if not text:
        return None
    cleaned = text.strip().lower()
    try:
        return TimeBucket(cleaned.upper().replace(" ", "_").replace("-", "_"))
    except ValueError:
        pass
    for pattern, bucket in _BUCKET_WORDS:
        if pattern.search(cleaned):
            return bucket
    return None


def in_bucket(local_dt: datetime, bucket: TimeBucket) -> bool:
    start, end = BUCKET_RANGES[bucket]
    return start <= local_dt.time() < end


# ── Date normalization ───────────────────────────────────────────────

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

_MONTHS: dict[str, int] = {}
for _idx, _name in enumerate(
    ["january", "february", "march", "april", "may", "june", "july",
     "august", "september", "october", "november", "december"],
    start=1,
):
    _MONTHS[_name] = _idx
    _MONTHS[_name[:3]] = _idx
_MONTHS["sept"] = 9

_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))
_ORDINAL = r"(?:st|nd|rd|th)?"

_ISO_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_SLASH_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b")
_MONTH_DAY_RE = re.compile(rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}}){_ORDINAL}\b(?:,?\s*(\d{{4}}))?")
_DAY_MONTH_RE = re.compile(rf"\b(\d{{1,2}}){_ORDINAL}\s+(?:of\s+)?({_MONTH_ALT})\b(?:,?\s*(\d{{4}}))?")
_WEEKDAY_RE = re.compile(rf"\b(?:(this|next|coming)\s+)?({'|'.join(WEEKDAYS)})\b")
_IN_DAYS_RE = re.compile(r"\bin\s+(\d{1,2})\s+days?\b")


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _roll_forward(month: int, day: int, today: date) -> date | None:
    """Next occurrence of month/day on or after *today*."""
    for year in (today.year, today.year + 1):
        candidate = _safe_date(year, month, day)
        if candidate is not None and candidate >= today:
            return candidate
    return None


def _explicit_year(raw: str | None) -> int | None:
    if not raw:
        return None
    year = int(raw)
    return year + 2000 if year < 100 else year


def next_weekday(today: date, weekday: int, *, strictly_after: bool) -> date:
    ahead = (weekday - today.weekday()) % 7
    if ahead == 0 and strictly_after:
        ahead = 7
    return today + timedelta(days=ahead)


def normalize_date(text: str, today: date) -> date | None:
    """Resolve a spoken date relative to *today* (practice-local)."""
    phrase = " ".join(text.lower().replace(",", ", ").split())
    if not phrase:
        return None

    if "day after tomorrow" in phrase:
        return today + timedelta(days=2)
    if re.search(r"\btomorrow\b", phrase):
        return today + timedelta(days=1)
    if re.search(r"\b(a|one) week from (today|now)\b|\bin a week\b", phrase):
        return today + timedelta(days=7)
    if m := _IN_DAYS_RE.search(phrase):
        return today + timedelta(days=int(m.group(1)))
    if re.search(r"\b(today|this afternoon|this morning|tonight)\b", phrase):
        return today

    if m := _ISO_RE.search(phrase):
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    if m := _SLASH_RE.search(phrase):
        month, day = int(m.group(1)), int(m.group(2))
        year = _explicit_year(m.group(3))
        if year:
            return _safe_date(year, month, day)
        return _roll_forward(month, day, today)

    for regex, month_group, day_group in ((_MONTH_DAY_RE, 1, 2), (_DAY_MONTH_RE, 2, 1)):
        if m := regex.search(phrase):
            month = _MONTHS[m.group(month_group)]
            day = int(m.group(day_group))
            year = _explicit_year(m.group(3))
            if year:
                return _safe_date(year, month, day)
            return _roll_forward(month, day, today)

    if m := _WEEKDAY_RE.search(phrase):
        modifier, name = m.group(1), m.group(2)
        return next_weekday(
            today, WEEKDAYS.index(name), strictly_after=modifier == "next",
        )

    return None


# ── Practice-local time & spoken formats ─────────────────────────────


def practice_now(timezone: str, now: datetime) -> datetime:
    return now.astimezone(ZoneInfo(timezone))


def to_local(iso_time: str, timezone: str) -> datetime:
    """Parse an ISO-8601 timestamp and convert it to the practice timezone."""
    return datetime.fromisoformat(iso_time.replace("Z", "+00:00")).astimezone(
        ZoneInfo(timezone)
    )


def spoken_time(dt: datetime) -> str:
    """``9:00 AM`` style."""
    return dt.strftime("%I:%M %p").lstrip("0")


def spoken_date(d: date) -> str:
    """``Tuesday, October 20`` style."""
    return f"{d:%A}, {d:%B} {d.day}"


def spoken_slot(dt: datetime) -> str:
    """``Tuesday, October 20 at 9:00 AM`` style."""
    return f"{spoken_date(dt)} at {spoken_time(dt)}"


def spoken_list(items: list[str], conjunction: str = "or") -> str:
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    if len(items) == 2:
        return f"{items[0]} {conjunction} {items[1]}"
    return f"{', '.join(items[:-1])}, {conjunction} {items[-1]}"
