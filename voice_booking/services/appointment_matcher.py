"""Appointment Type Matcher.

Turns a free-text request ("I need a cleaning", "my tooth is killing
me") into one configured appointment type plus the providers and
operatories eligible to perform it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from voice_booking.errors import ConfigurationError
from voice_booking.practice import AppointmentTypeConfig, PracticeConfig
from voice_booking.services.text_matcher import TextMatcher

logger = logging.getLogger(__name__)

URGENT_KEYWORDS = (
    "pain", "toothache", "emergency", "hurts", "hurting", "broken", "cracked",
    "urgent", "abscess", "swelling", "swollen", "infection", "bleeding",
)
_URGENT_RE = re.compile(rf"\b({'|'.join(URGENT_KEYWORDS)})\b")


def is_urgent_request(text: str) -> bool:
    return bool(_URGENT_RE.search(text.lower()))


@dataclass(frozen=True)
class ResolvedAppointmentType:
    appointment_type: AppointmentTypeConfig
    provider_ids: list[str]
    operatory_ids: list[str]
    is_urgent: bool
    reasoning: str


class AppointmentTypeMatcher:
    def __init__(self, text_matcher: TextMatcher) -> None:
        self._text_matcher = text_matcher

    def resolve(self, request: str, practice: PracticeConfig) -> ResolvedAppointmentType | None:
        """Match *request* to an appointment type of *practice*.

        Returns ``None`` when the request does not clearly name one type.

        Raises:
            ConfigurationError: no matchable types, no eligible provider,
                or no operatory for the eligible providers.
        """
        candidates = practice.matchable_appointment_types()
        if not candidates:
            raise ConfigurationError("NO_APPOINTMENT_TYPES_CONFIGURED")

        match = self._text_matcher.match_appointment_type(request, candidates)
        if not match.matched or not match.appointment_type_id:
            logger.info("No appointment type for %r (%s)", request, match.reasoning)
            return None

        # Re-read the record by id; never act on what the matcher echoed back.
        appointment_type = practice.get_appointment_type(match.appointment_type_id)
        if appointment_type is None:
            logger.warning(
                "Matcher returned id %r which is not a matchable type of practice %s",
                match.appointment_type_id, practice.id,
            )
            return None

        providers = practice.eligible_providers(appointment_type)
        if not providers:
            logger.error(
                "Practice %s: no active provider accepts appointment type %s",
                practice.id, appointment_type.id,
            )
            raise ConfigurationError("NO_PROVIDER_FOR_APPOINTMENT_TYPE")

        operatory_ids = practice.operatory_ids_for(providers)
        if not operatory_ids:
            logger.error(
                "Practice %s: no active operatory assigned for appointment type %s",
                practice.id, appointment_type.id,
            )
            raise ConfigurationError("NO_OPERATORY_FOR_APPOINTMENT_TYPE")

        return ResolvedAppointmentType(
            appointment_type=appointment_type,
            provider_ids=[p.external_id for p in providers],
            operatory_ids=operatory_ids,
            is_urgent=is_urgent_request(request),
            reasoning=match.reasoning,
        )
