"""Practice configuration: appointment types, providers, operatories.

Configuration is managed elsewhere; this service only reads it.  The
``PracticeDirectory`` loads a JSON document of the shape::

    {"practices": [{"id": "...", "subdomain": "...", "location_id": "...",
                    "appointment_types": [...], "providers": [...],
                    "operatories": [...]}]}
"""

from __future__ import annotations

import json
import logging
from datetime import time
from pathlib import Path

from pydantic import BaseModel, Field

from voice_booking.errors import ConfigurationError

logger = logging.getLogger(__name__)


class AppointmentTypeConfig(BaseModel):
    id: str
    external_id: str | None = Field(None, description="Appointment type id in the scheduling system")
    name: str
    spoken_name: str | None = None
    duration: int = Field(..., gt=0, description="Minutes")
    keywords: list[str] = Field(default_factory=list)
    bookable_online: bool = True

    @property
    def display_name(self) -> str:
        return self.spoken_name or self.name


class OperatoryConfig(BaseModel):
    id: str
    external_id: str
    name: str = ""
    is_active: bool = True


class ProviderConfig(BaseModel):
    id: str
    external_id: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    accepted_appointment_type_ids: list[str] = Field(default_factory=list)
    operatory_ids: list[str] = Field(default_factory=list)


class PracticeConfig(BaseModel):
    id: str
    name: str = ""
    subdomain: str
    location_id: str
    timezone: str = "America/Chicago"
    lunch_break_start: time = time(13, 0)
    lunch_break_end: time = time(14, 0)
    min_booking_buffer_minutes: int = 60
    accepted_insurances: list[str] = Field(
        default_factory=list, description="Insurance plans the practice is in network with",
    )
    appointment_types: list[AppointmentTypeConfig] = Field(default_factory=list)
    providers: list[ProviderConfig] = Field(default_factory=list)
    operatories: list[OperatoryConfig] = Field(default_factory=list)

    def matchable_appointment_types(self) -> list[AppointmentTypeConfig]:
        """Types the matcher may choose from: bookable and mapped externally."""
        return [
            t for t in self.appointment_types
            if t.bookable_online and t.external_id
        ]

    def in_network_plan(self, insurance_name: str) -> str | None:
        """Accepted plan matching *insurance_name*, either name containing the other."""
        wanted = " ".join(insurance_name.lower().split())
        if not wanted:
            return None
        for plan in self.accepted_insurances:
            accepted = " ".join(plan.lower().split())
            if accepted and (accepted in wanted or wanted in accepted):
                return plan
        return None

    def get_appointment_type(self, external_id: str) -> AppointmentTypeConfig | None:
        for appointment_type in self.matchable_appointment_types():
            if appointment_type.external_id == external_id:
                return appointment_type
        return None

    def eligible_providers(self, appointment_type: AppointmentTypeConfig) -> list[ProviderConfig]:
        """Active providers that accept *appointment_type*."""
        return [
            p for p in self.providers
            if p.is_active and appointment_type.id in p.accepted_appointment_type_ids
        ]

    def operatory_ids_for(self, providers: list[ProviderConfig]) -> list[str]:
        """External ids of the active operatories assigned to *providers*."""
        active = {o.id: o for o in self.operatories if o.is_active}
        ids: list[str] = []
        for provider in providers:
            for operatory_id in provider.operatory_ids:
                operatory = active.get(operatory_id)
                if operatory and operatory.external_id not in ids:
                    ids.append(operatory.external_id)
        return ids

    def default_provider_id(self) -> str | None:
        for provider in self.providers:
            if provider.is_active:
                return provider.external_id
        return None


class PracticeDirectory:
    """Read-only lookup of practice configuration by id."""

    def __init__(self, practices: list[PracticeConfig] | None = None) -> None:
        self._practices = {p.id: p for p in practices or []}

    @classmethod
    def from_file(cls, path: str | Path) -> PracticeDirectory:
        """Load practices from *path*.  A missing file yields an empty directory."""
        path = Path(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.error("Practices file not found at %s", path)
            return cls()
        practices = [PracticeConfig.model_validate(p) for p in raw.get("practices", [])]
        logger.info("Loaded %d practice(s) from %s", len(practices), path)
        return cls(practices)

    def get(self, practice_id: str) -> PracticeConfig:
        practice = self._practices.get(practice_id)
        if practice is None:
            raise ConfigurationError("PRACTICE_NOT_FOUND")
        return practice

    def __len__(self) -> int:
        return len(self._practices)
