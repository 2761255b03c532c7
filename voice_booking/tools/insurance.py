"""``insurance_info``: "do you take my insurance?"

Answers from the practice's accepted-insurance list and leaves the
booking where it was, so the patient can ask at any point before the
appointment is booked.
"""

from __future__ import annotations

import logging

from voice_booking.dates import spoken_list
from voice_booking.state import ConversationState, Stage
from voice_booking.tools.base import HandlerResult, InsuranceInfoArgs, ToolContext

logger = logging.getLogger(__name__)

NO_INSURANCE_LIST = (
    "I'm sorry, I don't have the list of accepted insurances available right now, "
    "but our office staff can certainly help with that."
)

_RESUME = {
    Stage.INITIAL: "What kind of appointment can I help you with?",
    Stage.OFFERING_SLOTS: "Would you like me to look for some times?",
    Stage.NO_AVAILABILITY: "Would you like me to check a different day?",
    Stage.AWAITING_SLOT_CONFIRMATION: "Which of the times I mentioned works best for you?",
    Stage.AWAITING_PATIENT_DETAILS: "Could I get your first and last name and your date of birth?",
    Stage.AWAITING_FINAL_CONFIRMATION: "Shall I go ahead and book that appointment for you?",
}


def handle_insurance_info(
    state: ConversationState, args: InsuranceInfoArgs, ctx: ToolContext,
) -> HandlerResult:
    plans = ctx.practice.accepted_insurances
    resume = _RESUME.get(state.current_stage, "")
    if not plans:
        logger.info("Practice %s has no accepted-insurance list", ctx.practice.id)
        return HandlerResult.ok(f"{NO_INSURANCE_LIST} {resume}".strip())

    accepted = spoken_list(plans, "and")
    asked = (args.insurance_name or "").strip()
    if not asked:
        return HandlerResult.ok(
            f"We're in network with {accepted}. Is there a specific plan you'd like me to check?"
        )

    plan = ctx.practice.in_network_plan(asked)
    logger.info("Call %s: insurance %r -> %s", state.call_id, asked, plan or "out of network")
    if plan:
        message = f"Yes, we're in network with {plan}."
    else:
        message = (
            f"It looks like we're not in network with {asked}. We work with {accepted}. "
            "You're still welcome to come in, and our office can go over "
            "out-of-network costs with you."
        )
    return HandlerResult.ok(f"{message} {resume}".strip())
