"""Slot Search Engine.

Asks the scheduling system for open slots one day at a time and applies
the practice's business rules locally:

* the lunch window (a slot whose ``[start, start + duration)`` overlaps
  it is dropped);
* the minimum booking buffer (nothing starting sooner than
  ``min_booking_buffer_minutes`` from now);
* the patient's time-of-day preference.  If the preference leaves
  nothing but other times exist, the other times are returned and
  ``preference_relaxed`` is set so the caller can say so.

Scanning stops once ``min_useful`` matching slots are found; at most
``max_presented`` are returned, earliest first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from voice_booking.dates import TimeBucket, in_bucket
from voice_booking.practice import PracticeConfig
from voice_booking.services.nexhealth_client import NexHealthClient, SchedulingAPIError
from voice_booking.state import CandidateSlot

logger = logging.getLogger(__name__)

MIN_USEFUL_SLOTS = 2
MAX_PRESENTED_SLOTS = 3


@dataclass(frozen=True)
class SlotSearchRequest:
    duration: int
    provider_ids: list[str]
    operatory_ids: list[str]
    start_date: date
    days: int = 1
    time_preference: TimeBucket | None = None


@dataclass(frozen=True)
class SlotSearchResult:
    slots: list[CandidateSlot] = field(default_factory=list)
    next_available_date: date | None = None
    preference_relaxed: bool = False


def _parse_date(raw: Any) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError:
        logger.warning("Ignoring malformed next_available_date %r", raw)
        return None


class SlotSearchEngine:
    def __init__(
        self,
        client: NexHealthClient,
        *,
        min_useful: int = MIN_USEFUL_SLOTS,
        max_presented: int = MAX_PRESENTED_SLOTS,
    ) -> None:
        self._client = client
        self._min_useful = min_useful
        self._max_presented = max_presented

    def search(
        self, practice: PracticeConfig, request: SlotSearchRequest, now: datetime,
    ) -> SlotSearchResult:
        """Scan ``request.days`` days from ``request.start_date``.

        A failing day is skipped; ``SchedulingAPIError`` is raised only
        if every day in the window failed.
        """
        earliest = now + timedelta(minutes=practice.min_booking_buffer_minutes)
        preference = request.time_preference
        tz = ZoneInfo(practice.timezone)

        seen: set[tuple[str, str, str | None]] = set()
        preferred: list[CandidateSlot] = []
        unfiltered: list[CandidateSlot] = []
        next_available: date | None = None
        last_error: SchedulingAPIError | None = None
        failed_days = 0

        for offset in range(request.days):
            day = request.start_date + timedelta(days=offset)
            try:
                page = self._client.get_appointment_slots(
                    subdomain=practice.subdomain,
                    location_id=practice.location_id,
                    start_date=day.isoformat(),
                    days=1,
                    slot_length=request.duration,
                    provider_ids=request.provider_ids,
                    operatory_ids=request.operatory_ids,
                )
            except SchedulingAPIError as exc:
                logger.warning("Slot search for %s failed: %s", day, exc)
                last_error = exc
                failed_days += 1
                continue

            next_available = _parse_date(page.get("next_available_date")) or next_available

            for slot in self._extract(page, practice, request.provider_ids):
                if slot.key in seen:
                    continue
                seen.add(slot.key)
                if not self._is_bookable(slot, practice, request.duration, earliest):
                    continue
                unfiltered.append(slot)
                if preference is None or in_bucket(slot.start.astimezone(tz), preference):
                    preferred.append(slot)

            if len(preferred) >= self._min_useful:
                logger.debug("Slot search stopped early after %s", day)
                break

        if last_error is not None and failed_days == request.days:
            raise last_error

        slots, relaxed = preferred, False
        if not slots and unfiltered and preference is not None:
            slots, relaxed = unfiltered, True

        slots = sorted(slots, key=lambda s: s.start)[: self._max_presented]
        logger.info(
            "Slot search from %s over %d day(s): %d slot(s)%s",
            request.start_date, request.days, len(slots),
            " (preference relaxed)" if relaxed else "",
        )
        return SlotSearchResult(
            slots=slots,
            next_available_date=None if slots else next_available,
            preference_relaxed=relaxed,
        )

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _extract(
        page: dict[str, Any], practice: PracticeConfig, provider_ids: list[str],
    ) -> list[CandidateSlot]:
        slots: list[CandidateSlot] = []
        for provider in page.get("providers") or []:
            provider_id = str(provider.get("pid", ""))
            if provider_id not in provider_ids:
                continue
            location_id = str(provider.get("lid") or practice.location_id)
            for raw in provider.get("slots") or []:
                operatory = raw.get("operatory_id")
                try:
                    slots.append(
                        CandidateSlot(
                            time=raw["time"],
                            provider_id=provider_id,
                            operatory_id=str(operatory) if operatory is not None else None,
                            location_id=location_id,
                        )
                    )
                except (KeyError, ValidationError, ValueError):
                    logger.warning("Skipping malformed slot %r", raw)
        return slots

    @staticmethod
    def _is_bookable(
        slot: CandidateSlot, practice: PracticeConfig, duration: int, earliest: datetime,
    ) -> bool:
        start = slot.start
        if start < earliest:
            return False
        local_start = start.astimezone(ZoneInfo(practice.timezone))
        local_end = local_start + timedelta(minutes=duration)
        lunch_start = local_start.replace(
            hour=practice.lunch_break_start.hour,
            minute=practice.lunch_break_start.minute,
            second=0, microsecond=0,
        )
        lunch_end = local_start.replace(
            hour=practice.lunch_break_end.hour,
            minute=practice.lunch_break_end.minute,
            second=0, microsecond=0,
        )
        return not (local_start < lunch_end and local_end > lunch_start)
