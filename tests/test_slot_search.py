"""Tests for the Slot Search Engine."""

from __future__ import annotations

from datetime import date

import pytest
from conftest import NOW, TUESDAY_SLOTS, FakeNexHealth

from voice_booking.dates import TimeBucket
from voice_booking.services.nexhealth_client import SchedulingAPIError
from voice_booking.services.slot_search import SlotSearchEngine, SlotSearchRequest


def _request(**overrides) -> SlotSearchRequest:
    values = {
        "duration": 60,
        "provider_ids": ["301"],
        "operatory_ids": ["501"],
        "start_date": date(2026, 10, 19),
        "days": 3,
    }
    values.update(overrides)
    return SlotSearchRequest(**values)


class TestSlotSearch:
    def test_returns_slots_sorted_and_capped(self, practice):
        fake = FakeNexHealth({"2026-10-20": list(reversed(TUESDAY_SLOTS)) + ["2026-10-20T16:00:00-05:00"]})
        result = SlotSearchEngine(fake).search(practice, _request(), NOW)
        assert [s.time for s in result.slots] == TUESDAY_SLOTS
        assert result.next_available_date is None
        assert result.preference_relaxed is False

    def test_queries_one_day_at_a_time(self, practice):
        fake = FakeNexHealth({})
        SlotSearchEngine(fake).search(practice, _request(), NOW)
        assert [c["start_date"] for c in fake.slot_calls] == ["2026-10-19", "2026-10-20", "2026-10-21"]
        assert all(c["days"] == 1 for c in fake.slot_calls)
        assert fake.slot_calls[0]["slot_length"] == 60
        assert fake.slot_calls[0]["provider_ids"] == ["301"]

    def test_stops_once_enough_slots_found(self, practice):
        fake = FakeNexHealth({"2026-10-20": TUESDAY_SLOTS, "2026-10-21": ["2026-10-21T09:00:00-05:00"]})
        SlotSearchEngine(fake).search(practice, _request(), NOW)
        assert len(fake.slot_calls) == 2

    def test_drops_slots_inside_booking_buffer(self, practice):
        # NOW is 08:00 local; 08:30 is inside the 60 minute buffer.
        fake = FakeNexHealth({"2026-10-19": ["2026-10-19T08:30:00-05:00", "2026-10-19T09:00:00-05:00"]})
        result = SlotSearchEngine(fake).search(practice, _request(days=1), NOW)
        assert [s.time for s in result.slots] == ["2026-10-19T09:00:00-05:00"]

    def test_drops_slots_overlapping_lunch(self, practice):
        fake = FakeNexHealth({"2026-10-20": [
            "2026-10-20T12:30:00-05:00",  # 12:30-13:30 overlaps 13:00-14:00
            "2026-10-20T12:00:00-05:00",  # ends exactly at 13:00
            "2026-10-20T14:00:00-05:00",
        ]})
        result = SlotSearchEngine(fake).search(practice, _request(start_date=date(2026, 10, 20), days=1), NOW)
        assert [s.time for s in result.slots] == ["2026-10-20T12:00:00-05:00", "2026-10-20T14:00:00-05:00"]

    def test_deduplicates_identical_slots(self, practice):
        fake = FakeNexHealth({"2026-10-20": [TUESDAY_SLOTS[0], TUESDAY_SLOTS[0]]})
        result = SlotSearchEngine(fake).search(practice, _request(start_date=date(2026, 10, 20), days=1), NOW)
        assert len(result.slots) == 1

    def test_ignores_providers_not_requested(self, practice):
        fake = FakeNexHealth()
        result = SlotSearchEngine(fake).search(practice, _request(provider_ids=["999"]), NOW)
        assert result.slots == []

    def test_applies_time_preference(self, practice):
        fake = FakeNexHealth()
        result = SlotSearchEngine(fake).search(
            practice, _request(time_preference=TimeBucket.AFTERNOON, days=1, start_date=date(2026, 10, 20)), NOW,
        )
        assert [s.time for s in result.slots] == ["2026-10-20T15:00:00-05:00"]
        assert result.preference_relaxed is False

    def test_relaxes_preference_when_nothing_matches(self, practice):
        fake = FakeNexHealth({"2026-10-20": TUESDAY_SLOTS[:2]})
        result = SlotSearchEngine(fake).search(
            practice, _request(time_preference=TimeBucket.EVENING), NOW,
        )
        assert [s.time for s in result.slots] == TUESDAY_SLOTS[:2]
        assert result.preference_relaxed is True

    def test_empty_result_carries_next_available_date(self, practice):
        fake = FakeNexHealth({})
        fake.next_available_date = "2026-10-27"
        result = SlotSearchEngine(fake).search(practice, _request(), NOW)
        assert result.slots == []
        assert result.next_available_date == date(2026, 10, 27)

    def test_skips_a_failing_day(self, practice):
        fake = FakeNexHealth()
        calls = {"n": 0}
        original = fake.get_appointment_slots

        def flaky(**kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise SchedulingAPIError("boom", status_code=503)
            return original(**kwargs)

        fake.get_appointment_slots = flaky
        result = SlotSearchEngine(fake).search(practice, _request(), NOW)
        assert len(result.slots) == 3

    def test_raises_when_every_day_fails(self, practice):
        fake = FakeNexHealth()
        fake.slot_error = SchedulingAPIError("down", status_code=503)
        with pytest.raises(SchedulingAPIError):
            SlotSearchEngine(fake).search(practice, _request(), NOW)

    def test_skips_malformed_slots(self, practice):
        fake = FakeNexHealth({"2026-10-20": ["2026-10-20T09:00:00", TUESDAY_SLOTS[1]]})
        result = SlotSearchEngine(fake).search(practice, _request(start_date=date(2026, 10, 20), days=1), NOW)
        assert [s.time for s in result.slots] == [TUESDAY_SLOTS[1]]
