"""Patient Identity Resolver.

Finds the caller's existing patient record or creates a new one.

An existing record is accepted only when first name, last name *and*
date of birth all match exactly.  Phone and email are not identity keys:
family members often share them.  When no same-name record has the
right date of birth a new record is created, which needs a provider to
attach it to and a usable phone number and email address.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from voice_booking.errors import (
    STAFF_FOLLOW_UP,
    BookingError,
    ConfigurationError,
    PatientCreationError,
    UserInputError,
)
from voice_booking.practice import PracticeConfig
from voice_booking.services.nexhealth_client import (
    NexHealthClient,
    SchedulingAPIError,
    SchedulingErrorKind,
)

logger = logging.getLogger(__name__)

# RFC 5322-ish pattern; covers the vast majority of real-world emails.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

_DOB_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y")


@dataclass(frozen=True)
class PatientIdentity:
    external_patient_id: str
    is_new_record: bool


def normalize_dob(raw: str | None) -> str | None:
    """Return *raw* as ``YYYY-MM-DD`` or ``None`` if it is not a date."""
    if not raw:
        return None
    value = raw.strip()[:10] if re.match(r"^\d{4}-", raw.strip()) else raw.strip()
    for fmt in _DOB_FORMATS:
        try:
            return datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def normalize_phone(raw: str | None) -> str | None:
    """Ten-digit US number, or ``None``."""
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits if len(digits) == 10 else None


def validate_email(email: str | None) -> str | None:
    """Return an error code if *email* is missing or looks invalid, else ``None``."""
    if not email or not email.strip():
        return "MISSING_EMAIL"
    if not _EMAIL_RE.match(email.strip()):
        return "INVALID_EMAIL"
    return None


_CONTACT_PROMPTS = {
    "MISSING_PHONE": (
        "To set up your patient file I'll also need a phone number. "
        "What's the best number to reach you?"
    ),
    "INVALID_PHONE": (
        "I didn't catch a full ten-digit phone number. Could you say it again?"
    ),
    "MISSING_EMAIL": "And what's a good email address for your confirmation?",
    "INVALID_EMAIL": (
        "That email address doesn't sound quite right. Could you spell it out for me?"
    ),
}


def _record_dob(record: dict[str, Any]) -> str | None:
    bio = record.get("bio") or {}
    return normalize_dob(
        record.get("date_of_birth") or record.get("dob") or bio.get("date_of_birth")
    )


def _same_name(record: dict[str, Any], first_name: str, last_name: str) -> bool:
    return (
        str(record.get("first_name", "")).strip().casefold() == first_name.strip().casefold()
        and str(record.get("last_name", "")).strip().casefold() == last_name.strip().casefold()
    )


def classify_creation_error(exc: SchedulingAPIError) -> PatientCreationError:
    if exc.kind == SchedulingErrorKind.DUPLICATE:
        return PatientCreationError(
            "duplicate",
            "It looks like you may already have a file with us under slightly different "
            "details. Could you double-check the spelling of your name and your date of birth?",
            recoverable=True,
        )
    if exc.kind == SchedulingErrorKind.VALIDATION:
        return PatientCreationError(
            "validation",
            "Some of those details didn't go through. "
            "Could you repeat your phone number and email address?",
            recoverable=True,
        )
    return PatientCreationError("system", STAFF_FOLLOW_UP, recoverable=False)


class PatientIdentityResolver:
    def __init__(self, client: NexHealthClient) -> None:
        self._client = client

    def resolve(
        self,
        practice: PracticeConfig,
        *,
        first_name: str,
        last_name: str,
        date_of_birth: str,
        phone: str | None = None,
        email: str | None = None,
        provider_id: str | None = None,
    ) -> PatientIdentity:
        """Find or create the patient.

        Raises:
            SchedulingAPIError: the search itself failed.
            BookingError: more than one record matches exactly.
            ConfigurationError: creation needed but no provider to attach to.
            UserInputError: creation needed but phone/email missing or invalid.
            PatientCreationError: the scheduling system refused the create.
        """
        dob = normalize_dob(date_of_birth)
        records = self._client.search_patients(
            subdomain=practice.subdomain,
            location_id=practice.location_id,
            name=f"{first_name} {last_name}",
        )
        same_name = [r for r in records if _same_name(r, first_name, last_name)]
        exact = [r for r in same_name if dob and _record_dob(r) == dob]

        if len(exact) == 1:
            patient_id = str(exact[0]["id"])
            logger.info("Matched existing patient %s", patient_id)
            return PatientIdentity(patient_id, is_new_record=False)
        if len(exact) > 1:
            logger.warning(
                "%d patient records share name and date of birth; not guessing", len(exact),
            )
            raise BookingError("MULTIPLE_PATIENT_MATCHES")

        logger.info(
            "No exact match among %d same-name record(s); creating a patient", len(same_name),
        )
        return self._create(
            practice,
            first_name=first_name,
            last_name=last_name,
            date_of_birth=dob or date_of_birth,
            phone=phone,
            email=email,
            provider_id=provider_id,
        )

    def _create(
        self,
        practice: PracticeConfig,
        *,
        first_name: str,
        last_name: str,
        date_of_birth: str,
        phone: str | None,
        email: str | None,
        provider_id: str | None,
    ) -> PatientIdentity:
        if not provider_id:
            logger.error("Practice %s has no provider to attach a new patient to", practice.id)
            raise ConfigurationError("MISSING_PROVIDER_ID_FOR_CREATION")

        if not phone or not phone.strip():
            raise UserInputError("MISSING_PHONE", _CONTACT_PROMPTS["MISSING_PHONE"])
        normalized_phone = normalize_phone(phone)
        if normalized_phone is None:
            raise UserInputError("INVALID_PHONE", _CONTACT_PROMPTS["INVALID_PHONE"])
        email_error = validate_email(email)
        if email_error:
            raise UserInputError(email_error, _CONTACT_PROMPTS[email_error])

        try:
            patient_id = self._client.create_patient(
                subdomain=practice.subdomain,
                location_id=practice.location_id,
                provider_id=provider_id,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                date_of_birth=date_of_birth,
                phone=normalized_phone,
                email=email.strip(),
            )
        except SchedulingAPIError as exc:
            error = classify_creation_error(exc)
            logger.warning("Patient creation failed (%s): %s", error.kind, exc)
            raise error from exc

        logger.info("Created patient %s", patient_id)
        return PatientIdentity(patient_id, is_new_record=True)
