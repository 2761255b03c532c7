"""Error taxonomy for tool-call handling.

Every failure a handler can report falls into one of five categories,
each with its own recovery policy:

* ``user_input``     : re-prompt with the exact valid options.
* ``configuration``  : ask the patient to contact the office.
* ``conflict``       : the slot was just taken; offer another time.
* ``system``         : external failure; staff will follow up.
* ``internal``       : a defect; generic apology, logged distinctly.

The spoken messages live in ``MESSAGES`` so that wording stays
consistent across handlers.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    USER_INPUT = "user_input"
    CONFIGURATION = "configuration"
    CONFLICT = "conflict"
    SYSTEM = "system"
    INTERNAL = "internal"


# ── Spoken messages ──────────────────────────────────────────────────

OFFICE_CONTACT = (
    "I'm sorry, I'm not able to book that over the phone right now. "
    "Please contact the office directly and our staff will get you scheduled."
)
STAFF_FOLLOW_UP = (
    "I'm sorry, I'm having trouble with our scheduling system at the moment. "
    "Our staff has been notified and will give you a call back shortly."
)
GENERIC_APOLOGY = (
    "I'm sorry, something went wrong on my end. "
    "Could we try that again?"
)

MESSAGES: dict[str, str] = {
    "NO_APPOINTMENT_TYPES_CONFIGURED": OFFICE_CONTACT,
    "NO_PROVIDER_FOR_APPOINTMENT_TYPE": OFFICE_CONTACT,
    "NO_OPERATORY_FOR_APPOINTMENT_TYPE": OFFICE_CONTACT,
    "MISSING_PROVIDER_ID_FOR_CREATION": OFFICE_CONTACT,
    "PRACTICE_NOT_FOUND": OFFICE_CONTACT,
    "PRACTICE_MISMATCH": OFFICE_CONTACT,
    "MULTIPLE_PATIENT_MATCHES": (
        "I found more than one record that matches those details. "
        "To keep your information safe, our staff will call you back to finish booking."
    ),
    "UNKNOWN_TOOL": GENERIC_APOLOGY,
    "CALL_ENDED": "This call has already ended. Please call back if you need anything else.",
    "TOOL_NOT_ALLOWED_IN_STAGE": GENERIC_APOLOGY,
    "INVALID_ARGUMENTS": (
        "I'm sorry, I didn't quite catch that. Could you say it again?"
    ),
    "SCHEDULING_UNAVAILABLE": STAFF_FOLLOW_UP,
    "TEXT_MATCHING_UNAVAILABLE": STAFF_FOLLOW_UP,
    "INVARIANT_VIOLATION": GENERIC_APOLOGY,
    "INTERNAL_ERROR": GENERIC_APOLOGY,
}


def message_for(code: str) -> str:
    """Return the spoken message for *code* (generic apology if unknown)."""
    return MESSAGES.get(code, GENERIC_APOLOGY)


# ── Exceptions ───────────────────────────────────────────────────────


class BookingError(Exception):
    """Base class for failures a handler reports to the caller.

    ``code`` is a stable machine-readable identifier, ``category`` picks
    the recovery policy and ``message`` is what the patient hears.
    """

    category: ErrorCategory = ErrorCategory.SYSTEM

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        self.message = message or message_for(code)
        super().__init__(f"{code}: {self.message}")


class UserInputError(BookingError):
    """The patient's input could not be resolved; re-prompt."""

    category = ErrorCategory.USER_INPUT


class ConfigurationError(BookingError):
    """Practice configuration prevents booking; an administrator must fix it."""

    category = ErrorCategory.CONFIGURATION


class InvariantViolation(BookingError):
    """A defect: state or preconditions that should be impossible."""

    category = ErrorCategory.INTERNAL

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__("INVARIANT_VIOLATION")

    def __str__(self) -> str:
        return f"INVARIANT_VIOLATION: {self.detail}"


class TextMatchingError(BookingError):
    """The text-matching capability failed or timed out."""

    category = ErrorCategory.SYSTEM

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__("TEXT_MATCHING_UNAVAILABLE")


class PatientCreationError(BookingError):
    """The scheduling system refused to create a patient record.

    ``kind`` is one of ``duplicate``, ``validation`` or ``system``;
    ``recoverable`` tells the caller whether asking the patient again
    can fix it.
    """

    def __init__(self, kind: str, message: str, *, recoverable: bool):
        self.kind = kind
        self.recoverable = recoverable
        self.category = ErrorCategory.USER_INPUT if recoverable else ErrorCategory.SYSTEM
        super().__init__(f"PATIENT_CREATION_FAILED_{kind.upper()}", message)
