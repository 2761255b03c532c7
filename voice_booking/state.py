"""Conversation state for one call, and the reducer that evolves it.

Handlers never mutate state.  They return a partial update (a nested
dict) and the dispatcher folds it in with ``apply_update``, which
validates the result before it is accepted:

    new_state = apply_update(state, {
        "current_stage": Stage.AWAITING_FINAL_CONFIRMATION,
        "appointment_booking": {"selected_slot": slot},
    })

Nested dicts are merged, everything else (lists included) replaces the
previous value, and an explicit ``None`` clears a field.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from voice_booking.dates import TimeBucket
from voice_booking.errors import InvariantViolation


class Stage(str, Enum):
    INITIAL = "INITIAL"
    OFFERING_SLOTS = "OFFERING_SLOTS"
    NO_AVAILABILITY = "NO_AVAILABILITY"
    AWAITING_SLOT_CONFIRMATION = "AWAITING_SLOT_CONFIRMATION"
    AWAITING_PATIENT_DETAILS = "AWAITING_PATIENT_DETAILS"
    AWAITING_FINAL_CONFIRMATION = "AWAITING_FINAL_CONFIRMATION"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"


# Stages in which the patient is choosing among presented slots.
SLOT_SELECTION_STAGES = frozenset({Stage.AWAITING_SLOT_CONFIRMATION})

# Stages that only make sense once a slot has been chosen.
SLOT_CHOSEN_STAGES = frozenset({
    Stage.AWAITING_PATIENT_DETAILS,
    Stage.AWAITING_FINAL_CONFIRMATION,
})

# ── Stage edges ──────────────────────────────────────────────────────
# Staying in the same stage is always allowed and not listed here.
# BOOKING_CONFIRMED is terminal.

STAGE_EDGES: frozenset[tuple[Stage, Stage]] = frozenset({
    (Stage.INITIAL, Stage.OFFERING_SLOTS),
    (Stage.INITIAL, Stage.NO_AVAILABILITY),
    (Stage.INITIAL, Stage.AWAITING_SLOT_CONFIRMATION),
    (Stage.OFFERING_SLOTS, Stage.NO_AVAILABILITY),
    (Stage.OFFERING_SLOTS, Stage.AWAITING_SLOT_CONFIRMATION),
    (Stage.NO_AVAILABILITY, Stage.OFFERING_SLOTS),
    (Stage.NO_AVAILABILITY, Stage.AWAITING_SLOT_CONFIRMATION),
    (Stage.AWAITING_SLOT_CONFIRMATION, Stage.OFFERING_SLOTS),
    (Stage.AWAITING_SLOT_CONFIRMATION, Stage.NO_AVAILABILITY),
    (Stage.AWAITING_SLOT_CONFIRMATION, Stage.AWAITING_PATIENT_DETAILS),
    (Stage.AWAITING_SLOT_CONFIRMATION, Stage.AWAITING_FINAL_CONFIRMATION),
    (Stage.AWAITING_PATIENT_DETAILS, Stage.AWAITING_FINAL_CONFIRMATION),
    # new pick or new search while giving details
    (Stage.AWAITING_PATIENT_DETAILS, Stage.AWAITING_SLOT_CONFIRMATION),
    (Stage.AWAITING_PATIENT_DETAILS, Stage.OFFERING_SLOTS),
    (Stage.AWAITING_PATIENT_DETAILS, Stage.NO_AVAILABILITY),
    # change of mind
    (Stage.AWAITING_FINAL_CONFIRMATION, Stage.AWAITING_SLOT_CONFIRMATION),
    (Stage.AWAITING_FINAL_CONFIRMATION, Stage.OFFERING_SLOTS),
    (Stage.AWAITING_FINAL_CONFIRMATION, Stage.NO_AVAILABILITY),
    (Stage.AWAITING_FINAL_CONFIRMATION, Stage.BOOKING_CONFIRMED),
})

# ── (stage, tool) table ──────────────────────────────────────────────

TOOL_STAGES: dict[str, frozenset[Stage]] = {
    "find_appointment_type": frozenset({
        Stage.INITIAL,
        Stage.OFFERING_SLOTS,
        Stage.NO_AVAILABILITY,
    }),
    "check_available_slots": frozenset({
        Stage.OFFERING_SLOTS,
        Stage.NO_AVAILABILITY,
        Stage.AWAITING_SLOT_CONFIRMATION,
        Stage.AWAITING_PATIENT_DETAILS,
    }),
    "select_and_confirm_slot": frozenset({
        Stage.AWAITING_SLOT_CONFIRMATION,
        Stage.AWAITING_PATIENT_DETAILS,
    }),
    "confirm_booking": frozenset({Stage.AWAITING_FINAL_CONFIRMATION}),
    "identify_or_create_patient": frozenset({
        Stage.INITIAL,
        Stage.OFFERING_SLOTS,
        Stage.NO_AVAILABILITY,
        Stage.AWAITING_SLOT_CONFIRMATION,
        Stage.AWAITING_PATIENT_DETAILS,
    }),
    "insurance_info": frozenset(set(Stage) - {Stage.BOOKING_CONFIRMED}),
}


def is_tool_allowed(tool_name: str, stage: Stage) -> bool:
    return stage in TOOL_STAGES.get(tool_name, frozenset())


# ── Models ───────────────────────────────────────────────────────────


class CandidateSlot(BaseModel):
    """One open time window offered to the patient.

    Two slots are the same slot when time, provider and operatory match.
    """

    model_config = ConfigDict(frozen=True)

    time: str = Field(..., description="ISO-8601 start time with UTC offset")
    provider_id: str
    operatory_id: str | None = None
    location_id: str

    @field_validator("time")
    @classmethod
    def _require_offset(cls, value: str) -> str:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            raise ValueError(f"slot time {value!r} has no UTC offset")
        return value

    @property
    def key(self) -> tuple[str, str, str | None]:
        return (self.time, self.provider_id, self.operatory_id)

    @property
    def start(self) -> datetime:
        return datetime.fromisoformat(self.time.replace("Z", "+00:00"))


class PatientDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: str | None = None
    last_name: str | None = None
    date_of_birth: str | None = None
    phone: str | None = None
    email: str | None = None
    external_patient_id: str | None = None
    is_identity_confirmed: bool = False
    is_new_record: bool = False


class AppointmentBooking(BaseModel):
    model_config = ConfigDict(frozen=True)

    appointment_type_id: str | None = None
    type_name: str | None = None
    spoken_name: str | None = None
    duration: int | None = None
    eligible_provider_ids: list[str] = Field(default_factory=list)
    eligible_operatory_ids: list[str] = Field(default_factory=list)
    patient_request: str | None = None
    is_urgent: bool = False
    last_time_preference: TimeBucket | None = None
    presented_slots: list[CandidateSlot] = Field(default_factory=list)
    selected_slot: CandidateSlot | None = None
    next_available_date: str | None = None
    confirmed_appointment_id: str | None = None
    confirmed_time: str | None = None


class ConversationState(BaseModel):
    """Authoritative state of one call."""

    model_config = ConfigDict(frozen=True)

    call_id: str
    practice_id: str
    current_stage: Stage = Stage.INITIAL
    patient_details: PatientDetails = Field(default_factory=PatientDetails)
    appointment_booking: AppointmentBooking = Field(default_factory=AppointmentBooking)

    @classmethod
    def start(cls, call_id: str, practice_id: str) -> ConversationState:
        return cls(call_id=call_id, practice_id=practice_id)


# ── Reducer ──────────────────────────────────────────────────────────


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_plain(v) for v in value]
    return value


def _deep_merge(base: dict[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def check_transition(previous: ConversationState, new: ConversationState) -> None:
    """Raise ``InvariantViolation`` if *new* is not a legal successor."""
    if new.call_id != previous.call_id or new.practice_id != previous.practice_id:
        raise InvariantViolation("call_id and practice_id are immutable")

    before, after = previous.current_stage, new.current_stage
    if before != after and (before, after) not in STAGE_EDGES:
        raise InvariantViolation(f"illegal stage transition {before.value} -> {after.value}")

    booking = new.appointment_booking
    if after in SLOT_SELECTION_STAGES and not booking.presented_slots:
        raise InvariantViolation(f"{after.value} requires presented slots")

    selected = booking.selected_slot
    if selected is not None and selected != previous.appointment_booking.selected_slot:
        if selected not in previous.appointment_booking.presented_slots:
            raise InvariantViolation(
                f"selected slot {selected.key} was never presented"
            )

    if after in SLOT_CHOSEN_STAGES and selected is None:
        raise InvariantViolation(f"{after.value} requires a selected slot")

    if after == Stage.BOOKING_CONFIRMED and not booking.confirmed_appointment_id:
        raise InvariantViolation("BOOKING_CONFIRMED requires an appointment id")


def apply_update(
    state: ConversationState, update: Mapping[str, Any] | None,
) -> ConversationState:
    """Fold a partial *update* into *state*, validating the result."""
    if not update:
        return state

    merged = _deep_merge(state.model_dump(), _plain(update))
    try:
        new_state = ConversationState.model_validate(merged)
    except ValidationError as exc:
        raise InvariantViolation(f"update does not fit the state schema: {exc}") from exc

    check_transition(state, new_state)
    return new_state
