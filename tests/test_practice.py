"""Tests for practice configuration and the simulator's input parsing."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import PRACTICE

from voice_booking.errors import ConfigurationError, ErrorCategory
from voice_booking.main import parse_line
from voice_booking.practice import PracticeConfig, PracticeDirectory

EXAMPLE_FILE = Path(__file__).resolve().parent.parent / "practices.example.json"


class TestPracticeDirectory:
    def test_from_file(self, tmp_path):
        path = tmp_path / "practices.json"
        path.write_text(json.dumps({"practices": [PRACTICE]}), encoding="utf-8")

        directory = PracticeDirectory.from_file(path)

        assert len(directory) == 1
        assert directory.get("demo-practice").subdomain == "riverside-dental"

    def test_example_file_loads(self):
        directory = PracticeDirectory.from_file(EXAMPLE_FILE)
        assert directory.get("demo-practice").timezone == "America/Chicago"

    def test_missing_file_gives_empty_directory(self, tmp_path):
        assert len(PracticeDirectory.from_file(tmp_path / "missing.json")) == 0

    def test_unknown_practice(self):
        with pytest.raises(ConfigurationError) as exc_info:
            PracticeDirectory([]).get("nowhere")
        assert exc_info.value.code == "PRACTICE_NOT_FOUND"
        assert exc_info.value.category == ErrorCategory.CONFIGURATION


class TestPracticeConfig:
    def _practice(self, **overrides) -> PracticeConfig:
        return PracticeConfig.model_validate({**PRACTICE, **overrides})

    def test_matchable_types_need_external_id_and_online_booking(self):
        practice = self._practice(
            appointment_types=[
                *PRACTICE["appointment_types"],
                {"id": "ortho", "name": "Ortho Consult", "duration": 45},
                {"id": "implant", "external_id": "9009", "name": "Implant", "duration": 90, "bookable_online": False},
            ],
        )
        assert [t.id for t in practice.matchable_appointment_types()] == ["cleaning", "emergency"]
        assert practice.get_appointment_type("9009") is None
        assert practice.get_appointment_type("9002").display_name == "emergency exam"

    def test_in_network_plan(self):
        practice = self._practice()
        assert practice.in_network_plan("  metlife ") == "MetLife"
        assert practice.in_network_plan("Delta Dental Premier") == "Delta Dental"
        assert practice.in_network_plan("Aetna") is None
        assert practice.in_network_plan("") is None
        assert self._practice(accepted_insurances=[]).in_network_plan("Cigna") is None

    def test_eligible_providers_and_operatories(self):
        practice = self._practice(
            providers=[
                *PRACTICE["providers"],
                {"id": "dr-kim", "external_id": "302", "accepted_appointment_type_ids": ["emergency"],
                 "operatory_ids": ["op-2"]},
                {"id": "dr-old", "external_id": "303", "is_active": False,
                 "accepted_appointment_type_ids": ["cleaning"], "operatory_ids": ["op-1"]},
            ],
            operatories=[
                *PRACTICE["operatories"],
                {"id": "op-2", "external_id": "502", "is_active": False},
            ],
        )
        cleaning = practice.get_appointment_type("9001")
        emergency = practice.get_appointment_type("9002")

        assert [p.id for p in practice.eligible_providers(cleaning)] == ["dr-lee"]
        emergency_providers = practice.eligible_providers(emergency)
        assert [p.id for p in emergency_providers] == ["dr-lee", "dr-kim"]
        assert practice.operatory_ids_for(emergency_providers) == ["501"]

    def test_default_provider_skips_inactive(self):
        practice = self._practice(
            providers=[
                {"id": "dr-old", "external_id": "303", "is_active": False},
                {"id": "dr-lee", "external_id": "301"},
            ],
        )
        assert practice.default_provider_id() == "301"
        assert self._practice(providers=[]).default_provider_id() is None

    def test_lunch_break_from_strings(self):
        practice = self._practice(lunch_break_start="12:30", lunch_break_end="13:15")
        assert (practice.lunch_break_start.hour, practice.lunch_break_start.minute) == (12, 30)


class TestParseLine:
    def test_tool_with_arguments(self):
        assert parse_line('find_appointment_type {"patient_request": "a cleaning"}') == (
            "find_appointment_type",
            {"patient_request": "a cleaning"},
        )

    def test_tool_without_arguments(self):
        assert parse_line("check_available_slots  ") == ("check_available_slots", {})

    @pytest.mark.parametrize("line", ['confirm_booking ["yes"]', "confirm_booking {yes}"])
    def test_arguments_must_be_a_json_object(self, line):
        with pytest.raises(ValueError):
            parse_line(line)
