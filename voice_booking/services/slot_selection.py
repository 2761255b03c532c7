"""Slot Selection Matcher.

Resolves what the patient said ("the nine o'clock", "the second one",
"Tuesday works") to exactly one of the slots they were offered.  This
is a selection function, not a time parser: the result is always an
element of ``presented`` or ``None``.

A local pass handles ordinals, clock times (within ``TIME_TOLERANCE``)
and weekday names.  Anything it cannot settle goes to the text matcher
with the numbered list of offered times.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import datetime, timedelta

from voice_booking.dates import WEEKDAYS, spoken_slot, to_local
from voice_booking.services.text_matcher import TextMatcher
from voice_booking.state import CandidateSlot

logger = logging.getLogger(__name__)

TIME_TOLERANCE = timedelta(minutes=10)

_ORDINAL_RE = re.compile(
    r"\b(first|1st|second|2nd|third|3rd|last|middle|earliest|earlier one|latest|later one)\b"
    r"|\b(?:option|number|choice)\s+(\d|one|two|three|four|five)\b"
)
_CHOICE_NUMBERS = {"one": 1, "two": 2, "three": 3, "four": 4, "five": 5}
_ORDINAL_INDEX = {
    "first": 0, "1st": 0, "earliest": 0, "earlier one": 0,
    "second": 1, "2nd": 1,
    "third": 2, "3rd": 2,
    "last": -1, "latest": -1, "later one": -1,
}

_HOUR_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6, "seven": 7,
    "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}
_MINUTE_WORDS = {"oh five": 5, "fifteen": 15, "thirty": 30, "forty five": 45, "forty-five": 45}
_WORD_TIME_RE = re.compile(
    rf"\b(?:(at|around|about)\s+)?({'|'.join(_HOUR_WORDS)})"
    rf"(?:\s+({'|'.join(_MINUTE_WORDS)}))?\b"
)
_MERIDIEM_AHEAD_RE = re.compile(r"\s*(a\.?m|p\.?m|o'?clock)\b")
_CLOCK_RE = re.compile(
    r"(?:\b(at|around|about|for)\s+)?\b(\d{1,2})(?::(\d{2}))?\s*"
    r"(a\.?m\.?|p\.?m\.?|o'?clock)?(?![\d/]|st\b|nd\b|rd\b|th\b)"
)


def _words_to_digits(text: str) -> str:
    """Rewrite spoken clock times ("at nine", "ten thirty") as digits.

    A bare "one" is left alone so "the first one" stays an ordinal.
    """

    def _replace(m: re.Match[str]) -> str:
        lead, hour_word, minute_word = m.groups()
        if not (lead or minute_word or _MERIDIEM_AHEAD_RE.match(m.string, m.end())):
            return m.group(0)
        hour = _HOUR_WORDS[hour_word]
        minute = _MINUTE_WORDS.get(minute_word or "", 0)
        prefix = f"{lead} " if lead else ""
        return f"{prefix}{hour}:{minute:02d}"

    return _WORD_TIME_RE.sub(_replace, text)


def _mentioned_times(text: str) -> list[int]:
    """Minutes after midnight for each clock time spoken in *text*."""
    text = re.sub(r"\bnoon\b", "12:00 pm", text)
    times: list[int] = []
    for m in _CLOCK_RE.finditer(_words_to_digits(text)):
        lead, hour_raw, minute_raw, suffix = m.groups()
        if not (lead or minute_raw or suffix):
            continue
        hour, minute = int(hour_raw), int(minute_raw or 0)
        if hour > 23 or minute > 59:
            continue
        meridiem = (suffix or "").replace(".", "")
        if meridiem.startswith("p") and hour < 12:
            hour += 12
        elif meridiem.startswith("a") and hour == 12:
            hour = 0
        elif not meridiem.startswith(("a", "p")) and 1 <= hour <= 6:
            # Clinic hours: a bare "two" or "3:30" means the afternoon.
            hour += 12
        times.append(hour * 60 + minute)
    return times


def _minutes(local: datetime) -> int:
    return local.hour * 60 + local.minute


def select_slot(
    selection: str,
    presented: Sequence[CandidateSlot],
    timezone: str,
    matcher: TextMatcher,
    *,
    now: datetime | None = None,
) -> CandidateSlot | None:
    """Return the offered slot *selection* refers to, or ``None``."""
    if not presented:
        return None
    text = " ".join(selection.lower().split())
    local = {slot.key: to_local(slot.time, timezone) for slot in presented}

    pool = list(presented)
    named_days = [i for i, name in enumerate(WEEKDAYS) if re.search(rf"\b{name}\b", text)]
    if now is not None:
        today = now.astimezone(local[presented[0].key].tzinfo).date()
        if re.search(r"\btomorrow\b", text):
            named_days.append((today + timedelta(days=1)).weekday())
        elif re.search(r"\btoday\b", text):
            named_days.append(today.weekday())
    if named_days:
        pool = [s for s in pool if local[s.key].weekday() in named_days]

    if pool:
        times = _mentioned_times(text)
        if times:
            close = [
                s for s in pool
                if any(abs(_minutes(local[s.key]) - t) <= TIME_TOLERANCE.seconds // 60 for t in times)
            ]
            exact = [s for s in close if _minutes(local[s.key]) in times]
            hits = exact or close
            if len(hits) == 1:
                return hits[0]
        else:
            ordinal = _ORDINAL_RE.search(text)
            if ordinal:
                ordered = sorted(pool, key=lambda s: s.start)
                if ordinal.group(2):
                    choice = ordinal.group(2)
                    number = _CHOICE_NUMBERS.get(choice) or int(choice)
                    # Numbered choices count from one; "option 0" is no choice.
                    index = number - 1 if 1 <= number <= len(ordered) else -99
                elif ordinal.group(1) == "middle":
                    index = len(ordered) // 2 if len(ordered) % 2 == 1 else -99
                else:
                    index = _ORDINAL_INDEX[ordinal.group(1)]
                if -len(ordered) <= index < len(ordered):
                    return ordered[index]
            elif named_days and len(pool) == 1:
                return pool[0]

    labels = [spoken_slot(local[s.key]) for s in presented]
    index = matcher.match_slot(selection, labels)
    if index is None or not 0 <= index < len(presented):
        logger.info("Selection %r matched none of %d offered slot(s)", selection, len(presented))
        return None
    return presented[index]
