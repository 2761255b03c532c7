"""Shared test fixtures for the voice booking test suite."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("NEXHEALTH_API_KEY", "test-nexhealth-key-456")
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("TEXT_MATCHER_BACKEND", "keyword")


# Monday 2026-10-19, 08:00 in Chicago (CDT, UTC-5).
NOW = datetime(2026, 10, 19, 13, 0, tzinfo=UTC)

TUESDAY_SLOTS = [
    "2026-10-20T09:00:00-05:00",
    "2026-10-20T10:30:00-05:00",
    "2026-10-20T15:00:00-05:00",
]

PRACTICE = {
    "id": "demo-practice",
    "name": "Riverside Family Dental",
    "subdomain": "riverside-dental",
    "location_id": "4001",
    "timezone": "America/Chicago",
    "accepted_insurances": ["Delta Dental", "Cigna", "MetLife"],
    "appointment_types": [
        {
            "id": "cleaning",
            "external_id": "9001",
            "name": "Adult Prophy",
            "spoken_name": "cleaning",
            "duration": 60,
            "keywords": ["cleaning", "checkup", "hygiene"],
        },
        {
            "id": "emergency",
            "external_id": "9002",
            "name": "Limited Exam",
            "spoken_name": "emergency exam",
            "duration": 30,
            "keywords": ["toothache", "pain", "emergency", "swelling"],
        },
    ],
    "providers": [
        {
            "id": "dr-lee",
            "external_id": "301",
            "first_name": "Dana",
            "last_name": "Lee",
            "accepted_appointment_type_ids": ["cleaning", "emergency"],
            "operatory_ids": ["op-1"],
        },
    ],
    "operatories": [{"id": "op-1", "external_id": "501", "name": "Op 1"}],
}


class FakeNexHealth:
    """In-memory stand-in for ``NexHealthClient``.

    ``slots_by_day`` maps ``YYYY-MM-DD`` to slot start times for
    provider ``301`` in operatory ``501``.
    """

    def __init__(self, slots_by_day: dict[str, list[str]] | None = None) -> None:
        self.slots_by_day = slots_by_day if slots_by_day is not None else {"2026-10-20": TUESDAY_SLOTS}
        self.next_available_date: str | None = None
        self.patients: list[dict[str, Any]] = []
        self.created_patient_id = "new-1001"
        self.appointment_id = "appt-555"
        self.slot_error: Exception | None = None
        self.search_error: Exception | None = None
        self.create_error: Exception | None = None
        self.book_error: Exception | None = None
        self.slot_calls: list[dict[str, Any]] = []
        self.created: list[dict[str, Any]] = []
        self.booked: list[dict[str, Any]] = []

    def get_appointment_slots(self, **kwargs: Any) -> dict[str, Any]:
        self.slot_calls.append(kwargs)
        if self.slot_error is not None:
            raise self.slot_error
        times = self.slots_by_day.get(kwargs["start_date"], [])
        providers = []
        if times:
            providers.append({
                "pid": "301",
                "lid": "4001",
                "slots": [{"time": t, "operatory_id": 501} for t in times],
            })
        return {"providers": providers, "next_available_date": self.next_available_date}

    def search_patients(self, **kwargs: Any) -> list[dict[str, Any]]:
        if self.search_error is not None:
            raise self.search_error
        return list(self.patients)

    def create_patient(self, **kwargs: Any) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(kwargs)
        return self.created_patient_id

    def book_appointment(self, **kwargs: Any) -> str:
        if self.book_error is not None:
            raise self.book_error
        self.booked.append(kwargs)
        return self.appointment_id


@pytest.fixture
def practice():
    from voice_booking.practice import PracticeConfig

    return PracticeConfig.model_validate(PRACTICE)


@pytest.fixture
def fake_nexhealth():
    return FakeNexHealth()


@pytest.fixture
def services(practice, fake_nexhealth):
    """Booking services on the fake scheduler, keyword matcher and a fixed clock."""
    from voice_booking.practice import PracticeDirectory
    from voice_booking.services.text_matcher import KeywordTextMatcher
    from voice_booking.tools.base import BookingServices

    return BookingServices(
        directory=PracticeDirectory([practice]),
        scheduling=fake_nexhealth,
        text_matcher=KeywordTextMatcher(),
        clock=lambda: NOW,
    )


@pytest.fixture
def ctx(practice, services):
    from voice_booking.tools.base import ToolContext

    return ToolContext(practice=practice, services=services, now=NOW)


@pytest.fixture
def dispatcher(services):
    from voice_booking.orchestrator import ToolCallDispatcher

    return ToolCallDispatcher(services)


@pytest.fixture
def mock_nexhealth_response():
    """Factory fixture for creating mock NexHealth HTTP responses."""

    def _make(data: Any, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
