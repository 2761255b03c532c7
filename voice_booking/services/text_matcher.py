"""Natural-language matching behind a narrow interface.

Handlers never talk to an LLM directly.  They go through ``TextMatcher``,
whose every operation takes a closed candidate set and returns one
member of it or an explicit "no match" (``None`` / ``matched=False``).
Two implementations:

* ``ClaudeTextMatcher`` asks a small Claude model (temperature 0, short
  timeout, one retry) and validates the answer against the candidates.
  Failures raise ``TextMatchingError`` and are handled as system errors.
* ``KeywordTextMatcher`` is deterministic: keyword scoring, the local
  date parser and phrase lists.  Used in tests and offline development.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from voice_booking import prompts
from voice_booking.config import (
    ANTHROPIC_API_KEY,
    LLM_TIMEOUT_SECONDS,
    MATCHER_MODEL_NAME,
    NOTE_MODEL_NAME,
    TEXT_MATCHER_BACKEND,
)
from voice_booking.dates import TimeBucket, normalize_date, parse_time_bucket
from voice_booking.errors import TextMatchingError
from voice_booking.practice import AppointmentTypeConfig
from voice_booking.services.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppointmentMatch:
    matched: bool
    appointment_type_id: str | None = None
    reasoning: str = ""


class ConfirmationIntent(str, Enum):
    AFFIRM = "AFFIRM"
    CHANGE = "CHANGE"
    UNCLEAR = "UNCLEAR"


@dataclass(frozen=True)
class ConfirmationReading:
    intent: ConfirmationIntent
    time_preference: TimeBucket | None = None


class TextMatcher(Protocol):
    def match_appointment_type(
        self, request: str, candidates: Sequence[AppointmentTypeConfig],
    ) -> AppointmentMatch: ...

    def match_date(self, phrase: str, today: date, timezone: str) -> date | None: ...

    def match_slot(self, selection: str, options: Sequence[str]) -> int | None:
        """Zero-based index into *options*, or ``None``."""
        ...

    def classify_confirmation(self, reply: str) -> ConfirmationReading: ...

    def draft_note(
        self,
        appointment_type: str,
        patient_request: str | None,
        time_preference: TimeBucket | None,
    ) -> str | None:
        """Advisory visit note; ``None`` means use the plain template."""
        ...


# ── Deterministic implementation ─────────────────────────────────────

_SOFT_AFFIRM_RE = re.compile(r"\b(no problem|not a problem|no worries|no doubt)\b")
_AFFIRM_RE = re.compile(
    r"\b(yes|yeah|yep|yup|sure|correct|right|perfect|great|ok|okay|absolutely|"
    r"definitely|sounds (?:good|great|right|perfect)|that works|works for me|"
    r"go ahead|book it|please do)\b"
)
_CHANGE_RE = re.compile(
    r"\b(no|nope|nah|actually|different|another|change|instead|rather|"
    r"reschedule|other time|wrong|not right|not correct|incorrect|"
    r"doesn'?t work|does not work|won'?t work|can'?t make)\b"
)
_HESITANT_RE = re.compile(r"\b(not sure|unsure|don'?t know|maybe|hold on|wait|let me think)\b")


class KeywordTextMatcher:
    """Deterministic ``TextMatcher`` built on keyword lists."""

    def match_appointment_type(
        self, request: str, candidates: Sequence[AppointmentTypeConfig],
    ) -> AppointmentMatch:
        text = request.lower()
        scores: dict[str, int] = {}
        for candidate in candidates:
            phrases = {candidate.name.lower(), candidate.display_name.lower()}
            phrases.update(k.lower() for k in candidate.keywords)
            score = sum(
                1 for phrase in phrases
                if phrase and re.search(rf"\b{re.escape(phrase)}\b", text)
            )
            if score:
                scores[candidate.external_id] = score

        if not scores:
            return AppointmentMatch(False, reasoning="no keyword matched")
        best = max(scores.values())
        winners = [type_id for type_id, score in scores.items() if score == best]
        if len(winners) > 1:
            return AppointmentMatch(False, reasoning=f"tie between {', '.join(winners)}")
        return AppointmentMatch(True, winners[0], reasoning=f"{best} keyword(s) matched")

    def match_date(self, phrase: str, today: date, timezone: str) -> date | None:
        return normalize_date(phrase, today)

    def match_slot(self, selection: str, options: Sequence[str]) -> int | None:
        needle = selection.strip().lower()
        if not needle:
            return None
        hits = [i for i, option in enumerate(options) if needle in option.lower()]
        return hits[0] if len(hits) == 1 else None

    def classify_confirmation(self, reply: str) -> ConfirmationReading:
        text = reply.lower()
        preference = parse_time_bucket(text)
        soft_affirm = bool(_SOFT_AFFIRM_RE.search(text))
        remainder = _SOFT_AFFIRM_RE.sub(" ", text)

        if _CHANGE_RE.search(remainder):
            return ConfirmationReading(ConfirmationIntent.CHANGE, preference)
        if _HESITANT_RE.search(remainder):
            return ConfirmationReading(ConfirmationIntent.UNCLEAR)
        if soft_affirm or _AFFIRM_RE.search(remainder):
            return ConfirmationReading(ConfirmationIntent.AFFIRM)
        if preference:
            return ConfirmationReading(ConfirmationIntent.CHANGE, preference)
        return ConfirmationReading(ConfirmationIntent.UNCLEAR)

    def draft_note(
        self,
        appointment_type: str,
        patient_request: str | None,
        time_preference: TimeBucket | None,
    ) -> str | None:
        return None


# ── Claude implementation ────────────────────────────────────────────


def _build_matcher_llm() -> ChatAnthropic:
    """Build a Haiku LLM for closed-set classification."""
    return ChatAnthropic(
        model=MATCHER_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=64,
        timeout=LLM_TIMEOUT_SECONDS,
        max_retries=1,
    )


def _build_note_llm() -> ChatAnthropic:
    """Build a Haiku LLM for the short advisory appointment note."""
    return ChatAnthropic(
        model=NOTE_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.3,
        max_tokens=120,
        timeout=LLM_TIMEOUT_SECONDS,
        max_retries=1,
    )


_MATCH_LINE_RE = re.compile(r"MATCH:\s*(\S+)", re.IGNORECASE)
_REASON_LINE_RE = re.compile(r"REASON:\s*(.+)", re.IGNORECASE)
_ISO_DATE_RE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
_NUMBER_RE = re.compile(r"\b(\d+)\b")


class ClaudeTextMatcher:
    """``TextMatcher`` backed by a small Claude model."""

    def __init__(self, llm: ChatAnthropic | None = None, note_llm: ChatAnthropic | None = None):
        self._llm = llm or _build_matcher_llm()
        self._note_llm = note_llm or _build_note_llm()

    def _ask(self, operation: str, prompt: str, llm: ChatAnthropic | None = None) -> str:
        t0 = time.perf_counter()
        try:
            response = (llm or self._llm).invoke([HumanMessage(content=prompt)])
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", operation, error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.warning("Text matching %s failed: %s", operation, exc)
            raise TextMatchingError(operation) from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", operation, latency_ms=elapsed)
        answer = response.content if isinstance(response.content, str) else str(response.content)
        logger.debug("Text matching %s answered %r (%.0fms)", operation, answer, elapsed)
        return answer.strip()

    def match_appointment_type(
        self, request: str, candidates: Sequence[AppointmentTypeConfig],
    ) -> AppointmentMatch:
        options = "\n".join(
            f"{c.external_id} | {c.name} | {', '.join(c.keywords) or c.display_name}"
            for c in candidates
        )
        answer = self._ask(
            "match_appointment_type",
            prompts.APPOINTMENT_TYPE_PROMPT.format(request=request, options=options),
        )
        match_line = _MATCH_LINE_RE.search(answer)
        reason_line = _REASON_LINE_RE.search(answer)
        reasoning = reason_line.group(1).strip() if reason_line else ""
        chosen = match_line.group(1).strip() if match_line else prompts.NO_MATCH

        valid_ids = {c.external_id for c in candidates}
        if chosen.upper() == prompts.NO_MATCH or chosen not in valid_ids:
            if chosen.upper() != prompts.NO_MATCH:
                logger.warning("Matcher answered unknown appointment type id %r", chosen)
            return AppointmentMatch(False, reasoning=reasoning or "no confident match")
        return AppointmentMatch(True, chosen, reasoning=reasoning)

    def match_date(self, phrase: str, today: date, timezone: str) -> date | None:
        answer = self._ask(
            "match_date",
            prompts.DATE_PROMPT.format(
                today=today.isoformat(),
                today_weekday=f"{today:%A}",
                timezone=timezone,
                phrase=phrase,
            ),
        )
        m = _ISO_DATE_RE.search(answer)
        if not m or prompts.INVALID_DATE in answer.upper():
            return None
        try:
            return date.fromisoformat(m.group(1))
        except ValueError:
            return None

    def match_slot(self, selection: str, options: Sequence[str]) -> int | None:
        numbered = "\n".join(f"{i}. {option}" for i, option in enumerate(options, start=1))
        answer = self._ask(
            "match_slot",
            prompts.SLOT_PROMPT.format(options=numbered, selection=selection),
        )
        if prompts.NO_MATCH in answer.upper():
            return None
        m = _NUMBER_RE.search(answer)
        if not m:
            return None
        index = int(m.group(1)) - 1
        return index if 0 <= index < len(options) else None

    def classify_confirmation(self, reply: str) -> ConfirmationReading:
        answer = self._ask(
            "classify_confirmation", prompts.CONFIRMATION_PROMPT.format(reply=reply),
        ).upper()
        if answer.startswith(ConfirmationIntent.CHANGE.value):
            _, _, bucket = answer.partition(":")
            return ConfirmationReading(ConfirmationIntent.CHANGE, parse_time_bucket(bucket))
        if answer.startswith(ConfirmationIntent.AFFIRM.value):
            return ConfirmationReading(ConfirmationIntent.AFFIRM)
        return ConfirmationReading(ConfirmationIntent.UNCLEAR)

    def draft_note(
        self,
        appointment_type: str,
        patient_request: str | None,
        time_preference: TimeBucket | None,
    ) -> str | None:
        if not patient_request:
            return None
        preference_line = (
            f"Preferred time of day: {time_preference.value.lower()}" if time_preference else ""
        )
        try:
            note = self._ask(
                "draft_note",
                prompts.NOTE_PROMPT.format(
                    appointment_type=appointment_type,
                    patient_request=patient_request,
                    preference_line=preference_line,
                ),
                self._note_llm,
            )
        except TextMatchingError:
            return None
        return note[:300] or None


def build_text_matcher() -> TextMatcher:
    """Return the matcher selected by ``TEXT_MATCHER_BACKEND``."""
    if TEXT_MATCHER_BACKEND == "keyword":
        logger.info("Using deterministic keyword text matcher")
        return KeywordTextMatcher()
    return ClaudeTextMatcher()
