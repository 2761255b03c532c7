"""Slot offering: the ``check_available_slots`` tool and the shared
search-then-offer step used by the other tools.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any

from voice_booking.config import BOOKING_HORIZON_DAYS, SEARCH_DAYS_DEFAULT, SEARCH_DAYS_URGENT
from voice_booking.dates import BUCKET_LABELS, TimeBucket, normalize_date, parse_time_bucket, spoken_date
from voice_booking.errors import ErrorCategory, InvariantViolation, UserInputError
from voice_booking.services.nexhealth_client import SchedulingAPIError
from voice_booking.services.slot_search import SlotSearchRequest
from voice_booking.state import ConversationState, Stage
from voice_booking.tools.base import (
    CheckAvailableSlotsArgs,
    HandlerResult,
    ToolContext,
    describe_slots,
    with_article,
)

logger = logging.getLogger(__name__)

SEARCH_TROUBLE = (
    "I'm having trouble checking the schedule right now. "
    "Would you like me to try again, or have our staff give you a call back?"
)


def search_days(is_urgent: bool) -> int:
    return SEARCH_DAYS_URGENT if is_urgent else SEARCH_DAYS_DEFAULT


def offer_slots(
    ctx: ToolContext,
    *,
    spoken_name: str,
    duration: int,
    provider_ids: list[str],
    operatory_ids: list[str],
    start_date: date,
    days: int,
    preference: TimeBucket | None,
    booking_update: dict[str, Any] | None = None,
    lead_in: str = "",
    error_update: dict[str, Any] | None = None,
) -> HandlerResult:
    """Search, then either offer the slots found or report no availability.

    On success the new slots replace ``presented_slots`` and any
    selection is cleared.  If the scheduling system is unreachable the
    result carries *error_update* (``None`` keeps the state as is).
    """
    request = SlotSearchRequest(
        duration=duration,
        provider_ids=provider_ids,
        operatory_ids=operatory_ids,
        start_date=start_date,
        days=days,
        time_preference=preference,
    )
    try:
        result = ctx.services.slot_search.search(ctx.practice, request, ctx.now)
    except SchedulingAPIError as exc:
        logger.warning("Slot search failed for practice %s: %s", ctx.practice.id, exc)
        return HandlerResult.fail(
            f"{lead_in}{SEARCH_TROUBLE}",
            "SCHEDULING_UNAVAILABLE",
            ErrorCategory.SYSTEM,
            update=error_update,
        )

    booking = dict(booking_update or {})
    booking["last_time_preference"] = preference
    booking["selected_slot"] = None
    timezone = ctx.practice.timezone

    if result.slots:
        booking["presented_slots"] = result.slots
        booking["next_available_date"] = None
        offered = describe_slots(result.slots, timezone)
        if result.preference_relaxed and preference is not None:
            body = (
                f"I don't have any {BUCKET_LABELS[preference]} openings then, "
                f"but I do have {offered}. Would one of those work for you?"
            )
        else:
            body = (
                f"For your {spoken_name}, I have {offered} available. "
                "Which of those works best for you?"
            )
        return HandlerResult.ok(
            f"{lead_in}{body}",
            {"current_stage": Stage.AWAITING_SLOT_CONFIRMATION, "appointment_booking": booking},
        )

    booking["presented_slots"] = []
    window = f"on {spoken_date(start_date)}" if days == 1 else "in the next few days"
    if result.next_available_date:
        booking["next_available_date"] = result.next_available_date.isoformat()
        body = (
            f"I'm sorry, I don't have any openings for {with_article(spoken_name)} {window}. "
            f"The next available date is {spoken_date(result.next_available_date)}. "
            "Would you like me to check for times on that day?"
        )
    else:
        booking["next_available_date"] = None
        body = (
            f"I'm sorry, I don't have any openings for {with_article(spoken_name)} {window}. "
            "Would you like me to check a different day, or have our staff call you back?"
        )
    return HandlerResult.ok(
        f"{lead_in}{body}",
        {"current_stage": Stage.NO_AVAILABILITY, "appointment_booking": booking},
    )


def resolve_requested_date(ctx: ToolContext, phrase: str) -> date:
    """Spoken date to calendar date, or ``UserInputError`` asking again."""
    today = ctx.today
    resolved = normalize_date(phrase, today)
    if resolved is None:
        resolved = ctx.services.text_matcher.match_date(phrase, today, ctx.practice.timezone)
    if resolved is None:
        raise UserInputError(
            "INVALID_DATE",
            "I'm sorry, I didn't catch which day you'd like. Could you give me a day "
            "of the week or a date, like Tuesday or March 3rd?",
        )
    if resolved < today:
        raise UserInputError(
            "DATE_IN_PAST", "That date has already passed. What day coming up works for you?",
        )
    if resolved > today + timedelta(days=BOOKING_HORIZON_DAYS):
        raise UserInputError(
            "DATE_TOO_FAR",
            f"I can only book up to {BOOKING_HORIZON_DAYS} days ahead. "
            "Is there an earlier day that works for you?",
        )
    return resolved


def handle_check_available_slots(
    state: ConversationState, args: CheckAvailableSlotsArgs, ctx: ToolContext,
) -> HandlerResult:
    booking = state.appointment_booking
    if not booking.appointment_type_id or not booking.duration:
        raise InvariantViolation("slot search requested before an appointment type was set")

    preference = booking.last_time_preference
    if args.time_preference:
        preference = parse_time_bucket(args.time_preference)
        if preference is None:
            raise UserInputError(
                "INVALID_TIME_PREFERENCE",
                "Do you prefer mornings, midday, afternoons or evenings?",
            )

    if args.requested_date:
        start_date, days = resolve_requested_date(ctx, args.requested_date), 1
    else:
        start_date, days = ctx.today, search_days(booking.is_urgent)

    return offer_slots(
        ctx,
        spoken_name=booking.spoken_name or booking.type_name or "appointment",
        duration=booking.duration,
        provider_ids=booking.eligible_provider_ids,
        operatory_ids=booking.eligible_operatory_ids,
        start_date=start_date,
        days=days,
        preference=preference,
    )
