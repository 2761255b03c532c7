"""Shared plumbing for tool handlers.

A handler has the signature::

    handler(state: ConversationState, args: <ArgsModel>, ctx: ToolContext) -> HandlerResult

and never mutates ``state``: the partial update it returns is folded in
by the dispatcher through ``state.apply_update``.  Handlers may raise
``BookingError`` subclasses or ``SchedulingAPIError``; the dispatcher
turns those into failure results and leaves the state untouched.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from voice_booking.dates import (
    practice_now,
    spoken_date,
    spoken_list,
    spoken_slot,
    spoken_time,
    to_local,
)
from voice_booking.errors import ErrorCategory
from voice_booking.practice import PracticeConfig, PracticeDirectory
from voice_booking.services.appointment_matcher import AppointmentTypeMatcher
from voice_booking.services.nexhealth_client import NexHealthClient
from voice_booking.services.patient_identity import PatientIdentityResolver, normalize_dob
from voice_booking.services.slot_search import SlotSearchEngine
from voice_booking.services.text_matcher import TextMatcher
from voice_booking.state import CandidateSlot


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class BookingServices:
    """Collaborators shared by every handler, built once per process."""

    directory: PracticeDirectory
    scheduling: NexHealthClient
    text_matcher: TextMatcher
    clock: Callable[[], datetime] = _utc_now
    appointment_matcher: AppointmentTypeMatcher = field(init=False)
    slot_search: SlotSearchEngine = field(init=False)
    patients: PatientIdentityResolver = field(init=False)

    def __post_init__(self) -> None:
        self.appointment_matcher = AppointmentTypeMatcher(self.text_matcher)
        self.slot_search = SlotSearchEngine(self.scheduling)
        self.patients = PatientIdentityResolver(self.scheduling)


@dataclass(frozen=True)
class ToolContext:
    practice: PracticeConfig
    services: BookingServices
    now: datetime

    @property
    def today(self) -> date:
        """Today in the practice's timezone."""
        return practice_now(self.practice.timezone, self.now).date()


@dataclass(frozen=True)
class HandlerResult:
    success: bool
    message: str
    update: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_category: ErrorCategory | None = None

    @classmethod
    def ok(cls, message: str, update: dict[str, Any] | None = None) -> HandlerResult:
        return cls(True, message, update or {})

    @classmethod
    def fail(
        cls,
        message: str,
        code: str,
        category: ErrorCategory,
        update: dict[str, Any] | None = None,
    ) -> HandlerResult:
        return cls(False, message, update or {}, code, category)


# ── Tool arguments ───────────────────────────────────────────────────
# Voice platforms send camelCase keys; both spellings are accepted.


class ToolArguments(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class FindAppointmentTypeArgs(ToolArguments):
    """Patient describes what they need ("a cleaning", "my tooth hurts")."""

    patient_request: str = Field(..., min_length=1, max_length=500)


class CheckAvailableSlotsArgs(ToolArguments):
    """Search again, optionally for a specific day and/or time of day."""

    requested_date: str | None = Field(None, max_length=100)
    time_preference: str | None = Field(None, max_length=50)


class SelectAndConfirmSlotArgs(ToolArguments):
    """Patient picks one of the offered times."""

    user_selection: str = Field(..., min_length=1, max_length=200)


class ConfirmBookingArgs(ToolArguments):
    """Patient answers the "does that sound correct?" question."""

    user_response: str = Field(..., min_length=1, max_length=200)


class InsuranceInfoArgs(ToolArguments):
    """Patient asks whether the practice takes their insurance."""

    insurance_name: str | None = Field(None, max_length=100)


class IdentifyOrCreatePatientArgs(ToolArguments):
    """Patient's name, date of birth and contact details."""

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: str = Field(..., description="YYYY-MM-DD or MM/DD/YYYY")
    phone: str | None = Field(None, max_length=30)
    email: str | None = Field(None, max_length=254)

    @field_validator("date_of_birth")
    @classmethod
    def _valid_dob(cls, value: str) -> str:
        normalized = normalize_dob(value)
        if normalized is None:
            raise ValueError("date_of_birth must be a calendar date")
        return normalized


# ── Spoken phrasing ──────────────────────────────────────────────────


def with_article(noun: str) -> str:
    return f"{'an' if noun[:1].lower() in 'aeiou' else 'a'} {noun}"


def describe_slots(slots: list[CandidateSlot], timezone: str) -> str:
    """``Tuesday, October 20 at 9:00 AM, 10:30 AM, or 2:00 PM``."""
    local = [to_local(s.time, timezone) for s in slots]
    if len({dt.date() for dt in local}) == 1:
        times = spoken_list([spoken_time(dt) for dt in local])
        return f"{spoken_date(local[0])} at {times}"
    return spoken_list([spoken_slot(dt) for dt in local])


def restatement(spoken_name: str, slot: CandidateSlot, timezone: str) -> str:
    local = to_local(slot.time, timezone)
    return (
        f"Just to confirm, I have you down for {with_article(spoken_name)} "
        f"on {spoken_slot(local)}. Does that all sound correct?"
    )
