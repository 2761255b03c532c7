"""HTTP client for the NexHealth API (the external scheduling system).

NexHealth API docs: https://docs.nexhealth.com/reference
Requests carry the API key as a Bearer token, the versioned ``Accept``
header, and a ``subdomain`` query parameter naming the practice.

Retry policy
------------
Reads (GET) get at most one automatic retry on a timeout, connection
error or 5xx.  Writes (POST) are never retried: a timed-out create may
have succeeded, and resubmitting risks a duplicate patient or a double
booking.  Every failure surfaces as ``SchedulingAPIError`` with a
``kind`` the handlers branch on.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any

import httpx

from voice_booking.config import (
    NEXHEALTH_API_KEY,
    NEXHEALTH_BASE_URL,
    REQUEST_TIMEOUT_SECONDS,
)
from voice_booking.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_READ_ATTEMPTS = 2
INITIAL_BACKOFF_SECONDS = 0.5

ACCEPT_HEADER = "application/vnd.Nexhealth+json;version=2"

_SLOT_TAKEN_MARKERS = (
    "slot is not available",
    "already booked",
    "no longer available",
    "overlaps",
)
_DUPLICATE_MARKERS = ("duplicate", "already exists")


class SchedulingErrorKind(str, Enum):
    SLOT_UNAVAILABLE = "slot_unavailable"
    DUPLICATE = "duplicate"
    VALIDATION = "validation"
    AUTH = "auth"
    SYSTEM = "system"


def classify_failure(status_code: int | None, body: str) -> SchedulingErrorKind:
    """Map an HTTP status and error body to a ``SchedulingErrorKind``."""
    text = body.lower()
    if status_code is None or status_code >= 500:
        return SchedulingErrorKind.SYSTEM
    if any(marker in text for marker in _SLOT_TAKEN_MARKERS):
        return SchedulingErrorKind.SLOT_UNAVAILABLE
    if status_code == 409 or any(marker in text for marker in _DUPLICATE_MARKERS):
        return SchedulingErrorKind.DUPLICATE
    if status_code in (401, 403):
        return SchedulingErrorKind.AUTH
    return SchedulingErrorKind.VALIDATION


class SchedulingAPIError(Exception):
    """Raised when a NexHealth API call fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        kind: SchedulingErrorKind = SchedulingErrorKind.SYSTEM,
    ):
        self.status_code = status_code
        self.kind = kind
        super().__init__(message)

    @property
    def is_slot_conflict(self) -> bool:
        return self.kind == SchedulingErrorKind.SLOT_UNAVAILABLE


class NexHealthClient:
    """Thin wrapper around the NexHealth REST API.

    Nothing is cached: availability and patient records must always be
    read fresh.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
    ):
        self._api_key = api_key or NEXHEALTH_API_KEY
        self._base_url = base_url or NEXHEALTH_BASE_URL
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Accept": ACCEPT_HEADER,
                "Content-Type": "application/json",
            },
            timeout=timeout or REQUEST_TIMEOUT_SECONDS,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request; GETs are retried once on transient failure."""
        attempts = MAX_READ_ATTEMPTS if method == "GET" else 1
        operation = f"{method} {path}"
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(method, path, params=params, json=json_body)
                elapsed = (time.perf_counter() - t0) * 1000
                if response.status_code >= 400:
                    kind = classify_failure(response.status_code, response.text)
                    metrics.record_failure(
                        "nexhealth", operation, error_type=kind.value, latency_ms=elapsed,
                    )
                    raise SchedulingAPIError(
                        f"NexHealth API error ({response.status_code}): {response.text}",
                        status_code=response.status_code,
                        kind=kind,
                    )
                try:
                    data = response.json()
                except ValueError as exc:
                    metrics.record_failure(
                        "nexhealth", operation, error_type="malformed", latency_ms=elapsed,
                    )
                    raise SchedulingAPIError(
                        f"NexHealth returned a non-JSON body for {operation}",
                        status_code=response.status_code,
                    ) from exc
                metrics.record_success("nexhealth", operation, latency_ms=elapsed)
                return data

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                metrics.record_failure("nexhealth", operation, error_type=type(exc).__name__)
                last_error = exc
                logger.warning(
                    "NexHealth %s attempt %d/%d failed (%s)",
                    operation, attempt, attempts, type(exc).__name__,
                )
            except SchedulingAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "NexHealth %s server error on attempt %d/%d",
                        operation, attempt, attempts,
                    )
                else:
                    raise  # 4xx and malformed bodies are not retried

            if attempt < attempts:
                time.sleep(INITIAL_BACKOFF_SECONDS)

        raise SchedulingAPIError(
            f"NexHealth {operation} failed after {attempts} attempt(s): {last_error}",
            status_code=getattr(last_error, "status_code", None),
        )

    @staticmethod
    def _payload(data: dict[str, Any]) -> Any:
        """Unwrap the ``{"code": true, "data": ...}`` envelope."""
        if isinstance(data, dict) and data.get("code") is False:
            raise SchedulingAPIError(
                f"NexHealth reported failure: {data.get('error') or data.get('description')}",
                kind=classify_failure(400, str(data.get("error") or "")),
            )
        return data.get("data") if isinstance(data, dict) else None

    # ── Public API methods ───────────────────────────────────────────

    def get_appointment_slots(
        self,
        *,
        subdomain: str,
        location_id: str,
        start_date: str,
        days: int,
        slot_length: int,
        provider_ids: list[str],
        operatory_ids: list[str],
    ) -> dict[str, Any]:
        """Open slots per provider starting on *start_date*.

        **Not cached**: availability changes in real time.

        Returns:
            ``{"providers": [{"pid", "lid", "slots": [{"time", "operatory_id"}]}],
            "next_available_date": "YYYY-MM-DD" | None}``
        """
        data = self._request(
            "GET",
            "/appointment_slots",
            params={
                "subdomain": subdomain,
                "start_date": start_date,
                "days": days,
                "lids[]": [location_id],
                "pids[]": provider_ids,
                "operatory_ids[]": operatory_ids,
                "slot_length": slot_length,
            },
        )
        providers = self._payload(data) or []
        if not isinstance(providers, list):
            raise SchedulingAPIError("Malformed appointment_slots response")
        next_available = data.get("next_available_date")
        if next_available is None:
            next_available = next(
                (p.get("next_available_date") for p in providers if p.get("next_available_date")),
                None,
            )
        return {"providers": providers, "next_available_date": next_available}

    def search_patients(
        self,
        *,
        subdomain: str,
        location_id: str,
        name: str,
        date_of_birth: str | None = None,
    ) -> list[dict[str, Any]]:
        """Active patients matching *name* (and *date_of_birth* when given)."""
        params: dict[str, Any] = {
            "subdomain": subdomain,
            "location_id": location_id,
            "name": name,
            "inactive": "false",
            "non_patient": "false",
            "per_page": 25,
        }
        if date_of_birth:
            params["date_of_birth"] = date_of_birth
        data = self._request("GET", "/patients", params=params)
        payload = self._payload(data)
        if isinstance(payload, dict):
            payload = payload.get("patients", [])
        return payload or []

    def create_patient(
        self,
        *,
        subdomain: str,
        location_id: str,
        provider_id: str,
        first_name: str,
        last_name: str,
        date_of_birth: str,
        phone: str,
        email: str,
    ) -> str:
        """Create a patient record and return its id.  Never retried."""
        data = self._request(
            "POST",
            "/patients",
            params={"subdomain": subdomain, "location_id": location_id},
            json_body={
                "provider": {"provider_id": provider_id},
                "patient": {
                    "first_name": first_name,
                    "last_name": last_name,
                    "email": email,
                    "bio": {
                        "date_of_birth": date_of_birth,
                        "phone_number": phone,
                    },
                },
            },
        )
        payload = self._payload(data) or {}
        patient_id = (payload.get("user") or {}).get("id") or payload.get("id")
        if not patient_id:
            raise SchedulingAPIError("Patient created but no id was returned")
        return str(patient_id)

    def book_appointment(
        self,
        *,
        subdomain: str,
        location_id: str,
        patient_id: str,
        provider_id: str,
        operatory_id: str | None,
        start_time: str,
        end_time: str,
        appointment_type_id: str | None = None,
        note: str | None = None,
    ) -> str:
        """Book an appointment and return its id.  Never retried.

        Args:
            start_time: ISO-8601 with an explicit UTC offset.
            end_time: ISO-8601 with an explicit UTC offset.
        """
        appt: dict[str, Any] = {
            "patient_id": patient_id,
            "provider_id": provider_id,
            "start_time": start_time,
            "end_time": end_time,
        }
        if operatory_id:
            appt["operatory_id"] = operatory_id
        if appointment_type_id:
            appt["appointment_type_id"] = appointment_type_id
        if note:
            appt["note"] = note

        data = self._request(
            "POST",
            "/appointments",
            params={"subdomain": subdomain, "location_id": location_id},
            json_body={"appt": appt},
        )
        payload = self._payload(data) or {}
        appointment_id = (payload.get("appt") or {}).get("id") or payload.get("id")
        if not appointment_id:
            raise SchedulingAPIError("Appointment booked but no id was returned")
        return str(appointment_id)


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: NexHealthClient | None = None
_client_lock = threading.Lock()


def get_nexhealth_client() -> NexHealthClient:
    """Return a module-level NexHealthClient singleton.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = NexHealthClient()
    return _client
