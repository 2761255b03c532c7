"""``identify_or_create_patient``: who is the patient?

May be called at any point before the final confirmation.  When a slot
is already chosen (``AWAITING_PATIENT_DETAILS``) a successful lookup
moves straight on to restating the appointment.
"""

from __future__ import annotations

import logging

from voice_booking.errors import PatientCreationError, UserInputError
from voice_booking.state import ConversationState, Stage
from voice_booking.tools.base import (
    HandlerResult,
    IdentifyOrCreatePatientArgs,
    ToolContext,
    restatement,
)

logger = logging.getLogger(__name__)


def _same_person(state: ConversationState, args: IdentifyOrCreatePatientArgs) -> bool:
    patient = state.patient_details
    return (
        bool(patient.external_patient_id)
        and patient.is_identity_confirmed
        and (patient.first_name or "").casefold() == args.first_name.strip().casefold()
        and (patient.last_name or "").casefold() == args.last_name.strip().casefold()
        and patient.date_of_birth == args.date_of_birth
    )


def _creation_provider(state: ConversationState, ctx: ToolContext) -> str | None:
    """Provider a new patient record is attached to."""
    booking = state.appointment_booking
    if booking.selected_slot is not None:
        return booking.selected_slot.provider_id
    if booking.eligible_provider_ids:
        return booking.eligible_provider_ids[0]
    return ctx.practice.default_provider_id()


def handle_identify_or_create_patient(
    state: ConversationState, args: IdentifyOrCreatePatientArgs, ctx: ToolContext,
) -> HandlerResult:
    stored = state.patient_details
    details = {
        "first_name": args.first_name.strip(),
        "last_name": args.last_name.strip(),
        "date_of_birth": args.date_of_birth,
        "phone": args.phone or stored.phone,
        "email": args.email or stored.email,
    }

    if _same_person(state, args):
        logger.info("Call %s: patient %s already identified", state.call_id, stored.external_patient_id)
        identity_update = {"patient_details": details}
        greeting = f"Thanks, {details['first_name']}, I already have your file."
    else:
        try:
            identity = ctx.services.patients.resolve(
                ctx.practice,
                first_name=details["first_name"],
                last_name=details["last_name"],
                date_of_birth=details["date_of_birth"],
                phone=details["phone"],
                email=details["email"],
                provider_id=_creation_provider(state, ctx),
            )
        except (UserInputError, PatientCreationError) as exc:
            # Keep what we have so the next attempt only needs the missing piece.
            return HandlerResult.fail(
                exc.message,
                exc.code,
                exc.category,
                update={
                    "patient_details": {
                        **details,
                        "external_patient_id": None,
                        "is_identity_confirmed": False,
                        "is_new_record": False,
                    },
                },
            )

        identity_update = {
            "patient_details": {
                **details,
                "external_patient_id": identity.external_patient_id,
                "is_identity_confirmed": True,
                "is_new_record": identity.is_new_record,
            },
        }
        if identity.is_new_record:
            greeting = f"Thanks, {details['first_name']}! I've set up your patient file."
        else:
            greeting = f"Thanks, {details['first_name']}, I found your file."

    slot = state.appointment_booking.selected_slot
    if state.current_stage == Stage.AWAITING_PATIENT_DETAILS and slot is not None:
        booking = state.appointment_booking
        spoken_name = booking.spoken_name or booking.type_name or "appointment"
        return HandlerResult.ok(
            f"{greeting} {restatement(spoken_name, slot, ctx.practice.timezone)}",
            {**identity_update, "current_stage": Stage.AWAITING_FINAL_CONFIRMATION},
        )

    follow_up = (
        "What kind of appointment are you looking for?"
        if state.current_stage == Stage.INITIAL
        else "Which of those times works best for you?"
        if state.current_stage == Stage.AWAITING_SLOT_CONFIRMATION
        else "What day or time would you like me to look for?"
    )
    return HandlerResult.ok(f"{greeting} {follow_up}", identity_update)
