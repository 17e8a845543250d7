"""HTTP client for the NexHealth practice-management API.

NexHealth API docs: https://docs.nexhealth.com/reference
Every request carries the global API key as a Bearer token, the versioned
``Accept`` header, and the practice's ``subdomain`` as a query parameter.

Retry policy
────────────
* GET requests retry on timeouts, connection errors and 5xx responses with
  exponential backoff.
* POST requests (patient creation, slot hold, hold confirmation) are only
  retried when the connection could not be opened.  A POST that times out
  may already have been applied, so it surfaces as
  :class:`AdapterTimeoutError` and the caller decides what to do.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol

import httpx

from booking_agent.config import (
    ADAPTER_TIMEOUT_SECONDS,
    HOLD_MINUTES,
    NEXHEALTH_API_KEY,
    NEXHEALTH_BASE_URL,
)
from booking_agent.errors import (
    AdapterTimeoutError,
    ConfigurationError,
    NotFoundError,
    RateLimitError,
    SchedulingAPIError,
    SlotConflictError,
)
from booking_agent.models import AppointmentType, Hold, Slot
from booking_agent.practices import PracticeConfig
from booking_agent.services.cache import TTLCache
from booking_agent.services.metrics import MetricsClient

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5

ACCEPT_HEADER = "application/vnd.Nexhealth+json;version=2"

_CK_APPOINTMENT_TYPES = "appointment_types:"

# Phrases NexHealth uses when a 400/422 means "someone else got there first".
_CONFLICT_HINTS = ("slot", "not available", "unavailable", "already booked", "already held")


class SchedulingAdapter(Protocol):
    """Operations the booking workflow needs from a practice-management system."""

    def find_patient(
        self, practice: PracticeConfig, *, first_name: str, last_name: str, date_of_birth: str,
    ) -> str | None: ...

    def create_patient(
        self,
        practice: PracticeConfig,
        *,
        first_name: str,
        last_name: str,
        date_of_birth: str,
        phone: str,
        email: str,
    ) -> str: ...

    def list_appointment_types(self, practice: PracticeConfig) -> list[AppointmentType]: ...

    def search_slots(
        self,
        practice: PracticeConfig,
        *,
        provider_ids: Sequence[str],
        operatory_ids: Sequence[str],
        appointment_type_id: str,
        start_date: date,
        days: int,
        slot_length: int,
    ) -> list[Slot]: ...

    def hold_slot(
        self,
        practice: PracticeConfig,
        slot: Slot,
        *,
        patient_id: str,
        duration_minutes: int,
        appointment_type_id: str | None = None,
    ) -> Hold: ...

    def confirm_booking(self, practice: PracticeConfig, hold_id: str, *, note: str | None = None) -> str: ...


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _unwrap(payload: Any, key: str) -> Any:
    """NexHealth wraps results as ``{"data": {...}}`` or ``{"data": [...]}``."""
    data = payload.get("data", payload) if isinstance(payload, dict) else payload
    if isinstance(data, dict) and key in data:
        return data[key]
    return data


class NexHealthClient:
    """Thin wrapper around the NexHealth REST API with retries and a TTL cache.

    Only appointment types are cached.  Slot availability is always fetched
    fresh, and holds/bookings are never cached.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        timeout_seconds: float | None = None,
        hold_minutes: int | None = None,
        cache: TTLCache | None = None,
        metrics: MetricsClient | None = None,
    ):
        self._base_url = base_url or NEXHEALTH_BASE_URL
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "Accept": ACCEPT_HEADER,
                "Authorization": f"Bearer {api_key or NEXHEALTH_API_KEY}",
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds or ADAPTER_TIMEOUT_SECONDS,
        )
        self._hold_minutes = hold_minutes or HOLD_MINUTES
        self._cache = cache or TTLCache()
        self._metrics = metrics or MetricsClient()

    def close(self) -> None:
        self._client.close()

    # ── Internal helpers ─────────────────────────────────────────────

    @staticmethod
    def _practice_params(practice: PracticeConfig) -> dict[str, Any]:
        if not practice.nexhealth_subdomain or not practice.nexhealth_location_id:
            raise ConfigurationError(
                f"Practice {practice.practice_id} has no NexHealth subdomain/location configured"
            )
        return {"subdomain": practice.nexhealth_subdomain, "location_id": practice.nexhealth_location_id}

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        text = response.text
        if status == 429:
            raise RateLimitError(f"Rate limited: {text}", status_code=status)
        if status == 404:
            raise NotFoundError(f"Not found: {text}", status_code=status)
        if status == 409 or (status in (400, 422) and any(h in text.lower() for h in _CONFLICT_HINTS)):
            raise SlotConflictError(f"Conflict {status}: {text}", status_code=status)
        if status >= 500:
            raise SchedulingAPIError(f"Server error {status}: {text}", status_code=status)
        raise SchedulingAPIError(f"Client error {status}: {text}", status_code=status)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        """Execute one API call under the retry policy described above."""
        operation = f"{method} {path}"
        is_read = method == "GET"
        last_error: Exception | None = None
        t0 = time.perf_counter()

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.request(method, path, params=params, json=json_body)
                self._raise_for_status(response)
                self._metrics.record_success(
                    "nexhealth", operation, latency_ms=(time.perf_counter() - t0) * 1000,
                )
                return response.json()

            except httpx.ConnectError as exc:
                last_error = exc
            except httpx.TimeoutException as exc:
                if not is_read:
                    self._record_failure(operation, exc, t0)
                    raise AdapterTimeoutError(f"{operation} timed out") from exc
                last_error = exc
            except SchedulingAPIError as exc:
                if not (is_read and exc.status_code and exc.status_code >= 500):
                    self._record_failure(operation, exc, t0)
                    raise
                last_error = exc

            backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
            if attempt < MAX_RETRIES:
                logger.warning(
                    "NexHealth %s attempt %d/%d failed (%s). Retrying in %.1fs…",
                    operation, attempt, MAX_RETRIES, type(last_error).__name__, backoff,
                )
                time.sleep(backoff)

        self._record_failure(operation, last_error, t0)
        if isinstance(last_error, httpx.TimeoutException):
            raise AdapterTimeoutError(f"{operation} timed out after {MAX_RETRIES} attempts") from last_error
        raise SchedulingAPIError(
            f"NexHealth {operation} failed after {MAX_RETRIES} attempts: {last_error}",
            status_code=getattr(last_error, "status_code", None),
        ) from last_error

    def _record_failure(self, operation: str, exc: Exception | None, t0: float) -> None:
        self._metrics.record_failure(
            "nexhealth", operation,
            error_type=type(exc).__name__ if exc else "Unknown",
            latency_ms=(time.perf_counter() - t0) * 1000,
        )

    # ── Patients ─────────────────────────────────────────────────────

    def find_patient(
        self, practice: PracticeConfig, *, first_name: str, last_name: str, date_of_birth: str,
    ) -> str | None:
        """Return the id of the single patient matching name and DOB, else ``None``."""
        params = {
            **self._practice_params(practice),
            "name": f"{first_name} {last_name}",
            "date_of_birth": date_of_birth,
            "inactive": "false",
        }
        data = self._request("GET", "/patients", params=params)
        patients = _unwrap(data, "patients") or []
        matches = [
            p for p in patients
            if (p.get("bio") or {}).get("date_of_birth", date_of_birth) == date_of_birth
        ]
        if len(matches) > 1:
            logger.warning(
                "Found %d patients for %s %s / %s; treating as no unique match",
                len(matches), first_name, last_name, date_of_birth,
            )
            return None
        return str(matches[0]["id"]) if matches else None

    def create_patient(
        self,
        practice: PracticeConfig,
        *,
        first_name: str,
        last_name: str,
        date_of_birth: str,
        phone: str,
        email: str,
    ) -> str:
        provider_id = practice.booking_provider_id
        if provider_id is None:
            raise ConfigurationError(f"Practice {practice.practice_id} has no provider configured")
        body = {
            "provider": {"provider_id": int(provider_id) if provider_id.isdigit() else provider_id},
            "patient": {
                "first_name": first_name,
                "last_name": last_name,
                "email": email,
                "bio": {
                    "date_of_birth": date_of_birth,
                    "phone_number": phone,
                },
            },
        }
        data = self._request("POST", "/patients", params=self._practice_params(practice), json_body=body)
        patient = _unwrap(data, "user")
        logger.info("Created NexHealth patient %s for practice %s", patient.get("id"), practice.practice_id)
        return str(patient["id"])

    # ── Appointment types ────────────────────────────────────────────

    def list_appointment_types(self, practice: PracticeConfig) -> list[AppointmentType]:
        """List the location's appointment types (cached)."""
        params = self._practice_params(practice)
        cache_key = f"{_CK_APPOINTMENT_TYPES}{params['subdomain']}:{params['location_id']}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        data = self._request("GET", "/appointment_types", params=params)
        result = [
            AppointmentType(
                appointment_type_id=str(item["id"]),
                name=item.get("name") or "",
                duration_minutes=int(item.get("minutes") or item.get("duration") or 30),
            )
            for item in _unwrap(data, "appointment_types") or []
        ]
        self._cache.put(cache_key, result)
        return result

    # ── Availability ─────────────────────────────────────────────────

    def search_slots(
        self,
        practice: PracticeConfig,
        *,
        provider_ids: Sequence[str],
        operatory_ids: Sequence[str],
        appointment_type_id: str,
        start_date: date,
        days: int,
        slot_length: int,
    ) -> list[Slot]:
        """Open slots across *days* starting at *start_date*, chronological.

        **Not cached**: availability changes in real time.
        """
        base = self._practice_params(practice)
        params: dict[str, Any] = {
            "subdomain": base["subdomain"],
            "start_date": start_date.isoformat(),
            "days": days,
            "lids[]": [base["location_id"]],
            "pids[]": list(provider_ids),
            "appointment_type_id": appointment_type_id,
            "slot_length": slot_length,
        }
        if operatory_ids:
            params["operatory_ids[]"] = list(operatory_ids)

        data = self._request("GET", "/appointment_slots", params=params)
        slots: dict[str, Slot] = {}
        for provider_block in _unwrap(data, "slots") or []:
            provider_id = str(provider_block.get("pid"))
            for raw in provider_block.get("slots") or []:
                start = _parse_datetime(raw["time"])
                end = _parse_datetime(raw["end_time"]) if raw.get("end_time") else start + timedelta(
                    minutes=slot_length,
                )
                operatory = raw.get("operatory_id")
                operatory_id = str(operatory) if operatory is not None else None
                slot_id = Slot.make_id(provider_id, operatory_id, start)
                slots[slot_id] = Slot(
                    slot_id=slot_id, start=start, end=end,
                    provider_id=provider_id, operatory_id=operatory_id,
                )
        return sorted(slots.values(), key=lambda s: s.start)

    # ── Holds and bookings ───────────────────────────────────────────

    def hold_slot(
        self,
        practice: PracticeConfig,
        slot: Slot,
        *,
        patient_id: str,
        duration_minutes: int,
        appointment_type_id: str | None = None,
    ) -> Hold:
        """Reserve *slot* for *patient_id*.  Raises :class:`SlotConflictError` if taken."""
        appt: dict[str, Any] = {
            "patient_id": patient_id,
            "provider_id": slot.provider_id,
            "start_time": slot.start.astimezone(UTC).isoformat(),
            "end_time": (slot.start + timedelta(minutes=duration_minutes)).astimezone(UTC).isoformat(),
        }
        if slot.operatory_id:
            appt["operatory_id"] = slot.operatory_id
        if appointment_type_id:
            appt["appointment_type_id"] = appointment_type_id

        data = self._request(
            "POST", "/appointment_slot_holds",
            params=self._practice_params(practice), json_body={"appt": appt},
        )
        hold = _unwrap(data, "hold")
        expires_raw = hold.get("expires_at") if isinstance(hold, dict) else None
        expires_at = (
            _parse_datetime(expires_raw)
            if expires_raw
            else datetime.now(UTC) + timedelta(minutes=self._hold_minutes)
        )
        logger.info("Held slot %s as hold %s until %s", slot.slot_id, hold["id"], expires_at.isoformat())
        return Hold(hold_id=str(hold["id"]), expires_at=expires_at)

    def confirm_booking(self, practice: PracticeConfig, hold_id: str, *, note: str | None = None) -> str:
        """Convert a hold into a booked appointment and return its id."""
        body = {"note": note} if note else {}
        data = self._request(
            "POST", f"/appointment_slot_holds/{hold_id}/confirm",
            params=self._practice_params(practice), json_body=body,
        )
        appointment = _unwrap(data, "appt")
        logger.info("Confirmed hold %s as appointment %s", hold_id, appointment.get("id"))
        return str(appointment["id"])
