"""``find_appointment_type``: what does the patient need?

Matches the request to a configured appointment type, records it on the
booking and immediately searches for openings, so the patient hears
concrete times in the same turn.
"""

from __future__ import annotations

import logging

from voice_booking.dates import spoken_list
from voice_booking.errors import ErrorCategory
from voice_booking.state import ConversationState, Stage
from voice_booking.tools.availability import offer_slots, search_days
from voice_booking.tools.base import FindAppointmentTypeArgs, HandlerResult, ToolContext, with_article

logger = logging.getLogger(__name__)


def handle_find_appointment_type(
    state: ConversationState, args: FindAppointmentTypeArgs, ctx: ToolContext,
) -> HandlerResult:
    practice = ctx.practice
    resolved = ctx.services.appointment_matcher.resolve(args.patient_request, practice)

    if resolved is None:
        options = spoken_list(
            [t.display_name for t in practice.matchable_appointment_types()]
        )
        return HandlerResult.fail(
            "I want to make sure I book the right visit. "
            f"Are you looking for {options}?",
            "APPOINTMENT_TYPE_NOT_MATCHED",
            ErrorCategory.USER_INPUT,
        )

    appointment_type = resolved.appointment_type
    spoken_name = appointment_type.display_name
    logger.info(
        "Call %s: appointment type %s (urgent=%s)",
        state.call_id, appointment_type.id, resolved.is_urgent,
    )

    booking = {
        "appointment_type_id": appointment_type.external_id,
        "type_name": appointment_type.name,
        "spoken_name": spoken_name,
        "duration": appointment_type.duration,
        "eligible_provider_ids": resolved.provider_ids,
        "eligible_operatory_ids": resolved.operatory_ids,
        "patient_request": args.patient_request,
        "is_urgent": resolved.is_urgent,
    }
    # If the search fails the type is still remembered so a retry can
    # go straight to check_available_slots.
    error_update = {
        "current_stage": Stage.OFFERING_SLOTS,
        "appointment_booking": {
            **booking,
            "presented_slots": [],
            "selected_slot": None,
            "last_time_preference": None,
        },
    }

    return offer_slots(
        ctx,
        spoken_name=spoken_name,
        duration=appointment_type.duration,
        provider_ids=resolved.provider_ids,
        operatory_ids=resolved.operatory_ids,
        start_date=ctx.today,
        days=search_days(resolved.is_urgent),
        preference=None,
        booking_update=booking,
        lead_in=f"Okay, I've noted you're looking for {with_article(spoken_name)}. ",
        error_update=error_update,
    )
