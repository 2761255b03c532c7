"""Booking Finalizer: ``select_and_confirm_slot`` and ``confirm_booking``.

Selection pins one of the presented slots and either asks for the
patient's details or restates the appointment.  Confirmation reads the
patient's answer to the restatement: a clear yes commits the booking, a
change of mind goes back to searching, anything else asks again.

Only an appointment id returned by the scheduling system can move the
call to ``BOOKING_CONFIRMED``.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from voice_booking.dates import spoken_date, spoken_time, to_local
from voice_booking.errors import STAFF_FOLLOW_UP, ErrorCategory, InvariantViolation
from voice_booking.services.nexhealth_client import SchedulingAPIError
from voice_booking.services.slot_selection import select_slot
from voice_booking.services.text_matcher import ConfirmationIntent
from voice_booking.state import CandidateSlot, ConversationState, Stage
from voice_booking.tools.availability import offer_slots, search_days
from voice_booking.tools.base import (
    ConfirmBookingArgs,
    HandlerResult,
    SelectAndConfirmSlotArgs,
    ToolContext,
    describe_slots,
    restatement,
)

logger = logging.getLogger(__name__)

ASK_FOR_DETAILS = (
    "Great choice. To finish booking, could I get your first and last name "
    "and your date of birth?"
)


def _spoken_name(state: ConversationState) -> str:
    booking = state.appointment_booking
    return booking.spoken_name or booking.type_name or "appointment"


def _is_patient_identified(state: ConversationState) -> bool:
    patient = state.patient_details
    return bool(patient.external_patient_id and patient.is_identity_confirmed)


# ── select_and_confirm_slot ──────────────────────────────────────────


def handle_select_and_confirm_slot(
    state: ConversationState, args: SelectAndConfirmSlotArgs, ctx: ToolContext,
) -> HandlerResult:
    presented = state.appointment_booking.presented_slots
    timezone = ctx.practice.timezone

    slot = select_slot(
        args.user_selection, presented, timezone, ctx.services.text_matcher, now=ctx.now,
    )
    if slot is None:
        return HandlerResult.fail(
            f"Sorry, which time works for you? I have {describe_slots(presented, timezone)}.",
            "SLOT_NOT_MATCHED",
            ErrorCategory.USER_INPUT,
        )

    logger.info("Call %s: patient picked %s", state.call_id, slot.time)
    booking = {"selected_slot": slot}

    if _is_patient_identified(state):
        return HandlerResult.ok(
            restatement(_spoken_name(state), slot, timezone),
            {"current_stage": Stage.AWAITING_FINAL_CONFIRMATION, "appointment_booking": booking},
        )
    return HandlerResult.ok(
        ASK_FOR_DETAILS,
        {"current_stage": Stage.AWAITING_PATIENT_DETAILS, "appointment_booking": booking},
    )


# ── confirm_booking ──────────────────────────────────────────────────


def handle_confirm_booking(
    state: ConversationState, args: ConfirmBookingArgs, ctx: ToolContext,
) -> HandlerResult:
    booking = state.appointment_booking
    if booking.selected_slot is None:
        raise InvariantViolation("confirm_booking without a selected slot")

    reading = ctx.services.text_matcher.classify_confirmation(args.user_response)
    logger.info("Call %s: confirmation read as %s", state.call_id, reading.intent.value)

    if reading.intent == ConfirmationIntent.AFFIRM:
        return _commit(state, ctx)

    if reading.intent == ConfirmationIntent.CHANGE:
        cleared: dict[str, Any] = {"presented_slots": [], "selected_slot": None}
        if reading.time_preference is not None:
            return offer_slots(
                ctx,
                spoken_name=_spoken_name(state),
                duration=booking.duration or 0,
                provider_ids=booking.eligible_provider_ids,
                operatory_ids=booking.eligible_operatory_ids,
                start_date=ctx.today,
                days=search_days(booking.is_urgent),
                preference=reading.time_preference,
                lead_in="No problem. ",
                error_update={
                    "current_stage": Stage.OFFERING_SLOTS,
                    "appointment_booking": {
                        **cleared, "last_time_preference": reading.time_preference,
                    },
                },
            )
        return HandlerResult.ok(
            "No problem. Would you like me to look for a different day or time?",
            {"current_stage": Stage.OFFERING_SLOTS, "appointment_booking": cleared},
        )

    return HandlerResult.fail(
        "Sorry, I didn't quite catch that. "
        + restatement(_spoken_name(state), booking.selected_slot, ctx.practice.timezone),
        "CONFIRMATION_UNCLEAR",
        ErrorCategory.USER_INPUT,
    )


def visit_note(state: ConversationState, ctx: ToolContext) -> str:
    booking = state.appointment_booking
    type_name = booking.type_name or _spoken_name(state)
    drafted = ctx.services.text_matcher.draft_note(
        type_name, booking.patient_request, booking.last_time_preference,
    )
    if drafted:
        return drafted
    if booking.patient_request:
        return f"{type_name} appointment. Original request: {booking.patient_request}"
    return f"{type_name} appointment."


def _commit(state: ConversationState, ctx: ToolContext) -> HandlerResult:
    booking = state.appointment_booking
    slot = booking.selected_slot
    patient_id = state.patient_details.external_patient_id
    if slot is None or not patient_id or not booking.duration:
        raise InvariantViolation("booking commit without slot, patient or duration")

    practice = ctx.practice
    start = to_local(slot.time, practice.timezone)
    end = start + timedelta(minutes=booking.duration)

    try:
        appointment_id = ctx.services.scheduling.book_appointment(
            subdomain=practice.subdomain,
            location_id=slot.location_id or practice.location_id,
            patient_id=patient_id,
            provider_id=slot.provider_id,
            operatory_id=slot.operatory_id,
            start_time=start.isoformat(),
            end_time=end.isoformat(),
            appointment_type_id=booking.appointment_type_id,
            note=visit_note(state, ctx),
        )
    except SchedulingAPIError as exc:
        if exc.is_slot_conflict:
            return _slot_taken(state, slot, ctx)
        logger.error("Call %s: booking failed: %s", state.call_id, exc)
        return HandlerResult.fail(
            f"{STAFF_FOLLOW_UP} Or, if you'd like, I can try a different time.",
            "BOOKING_FAILED",
            ErrorCategory.SYSTEM,
            update={
                "current_stage": Stage.OFFERING_SLOTS,
                "appointment_booking": {"presented_slots": [], "selected_slot": None},
            },
        )

    logger.info("Call %s: booked appointment %s at %s", state.call_id, appointment_id, slot.time)
    return HandlerResult.ok(
        f"You're all set! I've booked your {_spoken_name(state)} for {spoken_date(start)} "
        f"at {spoken_time(start)}. You should receive a confirmation shortly. "
        "Is there anything else I can help you with today?",
        {
            "current_stage": Stage.BOOKING_CONFIRMED,
            "appointment_booking": {
                "confirmed_appointment_id": appointment_id,
                "confirmed_time": slot.time,
                "presented_slots": [],
                "selected_slot": None,
            },
        },
    )


def _slot_taken(state: ConversationState, taken: CandidateSlot, ctx: ToolContext) -> HandlerResult:
    logger.info("Call %s: slot %s was taken before booking", state.call_id, taken.time)
    remaining = [s for s in state.appointment_booking.presented_slots if s.key != taken.key]
    if remaining:
        return HandlerResult.fail(
            "I'm so sorry, it looks like that time was just taken. I still have "
            f"{describe_slots(remaining, ctx.practice.timezone)}. Would one of those work?",
            "SLOT_UNAVAILABLE",
            ErrorCategory.CONFLICT,
            update={
                "current_stage": Stage.AWAITING_SLOT_CONFIRMATION,
                "appointment_booking": {"presented_slots": remaining, "selected_slot": None},
            },
        )
    return HandlerResult.fail(
        "I'm so sorry, it looks like that time was just taken. "
        "Would you like me to look for another day or time?",
        "SLOT_UNAVAILABLE",
        ErrorCategory.CONFLICT,
        update={
            "current_stage": Stage.OFFERING_SLOTS,
            "appointment_booking": {"presented_slots": [], "selected_slot": None},
        },
    )
