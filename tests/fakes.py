"""In-process fakes for the scheduling adapter and the classifier."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from booking_agent.errors import ClassificationError, SlotConflictError
from booking_agent.models import (
    AppointmentType,
    BookingUpdate,
    ConversationState,
    Hold,
    PatientStatus,
    PatientUpdate,
    Slot,
    Stage,
    StateUpdate,
)
from booking_agent.practices import AppointmentTypeSettings, PracticeConfig
from booking_agent.state.merge import merge_state

TZ = "America/Chicago"

# Monday 2 March 2026, 09:00 in Chicago.
NOW = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


def make_practice(**overrides) -> PracticeConfig:
    values = dict(
        practice_id="practice-1",
        name="Royal Oak Family Dental",
        assistant_ids=("assistant-1",),
        nexhealth_subdomain="royal-oak",
        nexhealth_location_id="4021",
        timezone=TZ,
        provider_ids=("p1",),
        operatory_ids=("op1",),
        appointment_types=(
            AppointmentTypeSettings(
                appointment_type_id="100",
                spoken_name="cleaning",
                keywords=("cleaning", "checkup"),
            ),
            AppointmentTypeSettings(
                appointment_type_id="200",
                spoken_name="emergency exam",
                keywords=("toothache", "pain", "emergency"),
                urgent=True,
            ),
            AppointmentTypeSettings(
                appointment_type_id="300",
                spoken_name="crown",
                keywords=("crown",),
                bookable_online=False,
            ),
        ),
    )
    values.update(overrides)
    return PracticeConfig(**values)


def local_slot(day: date, hour: int, minute: int = 0, *, provider: str = "p1", length: int = 30) -> Slot:
    start = datetime(day.year, day.month, day.day, hour, minute, tzinfo=ZoneInfo(TZ))
    return Slot(
        slot_id=Slot.make_id(provider, "op1", start),
        start=start,
        end=start + timedelta(minutes=length),
        provider_id=provider,
        operatory_id="op1",
    )


MONDAY = date(2026, 3, 2)
TUESDAY = date(2026, 3, 3)
WEDNESDAY = date(2026, 3, 4)


def default_slots() -> list[Slot]:
    return [
        local_slot(MONDAY, 13, 0),
        local_slot(TUESDAY, 9, 0),
        local_slot(TUESDAY, 14, 0),
        local_slot(TUESDAY, 14, 30),
        local_slot(WEDNESDAY, 10, 0),
        local_slot(WEDNESDAY, 14, 0),
    ]


class FakeScheduler:
    """Scheduling adapter with atomic holds.

    ``failures`` maps an operation name to an exception raised on its next
    call (then removed).
    """

    def __init__(self, *, clock: FakeClock, slots: Sequence[Slot] | None = None, hold_minutes: int = 10):
        self.clock = clock
        self.hold_minutes = hold_minutes
        self.types = [
            AppointmentType(appointment_type_id="100", name="Adult Cleaning", duration_minutes=30),
            AppointmentType(appointment_type_id="200", name="Emergency Exam", duration_minutes=30),
            AppointmentType(appointment_type_id="300", name="Crown Prep", duration_minutes=60),
            AppointmentType(appointment_type_id="400", name="Internal Admin", duration_minutes=15),
        ]
        self.slots = list(default_slots() if slots is None else slots)
        self.patients: dict[tuple[str, str, str], str] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.holds: dict[str, tuple[Slot, str]] = {}
        self.appointments: dict[str, str] = {}
        self._held_slot_ids: set[str] = set()
        self._lock = threading.Lock()
        self._seq = 0

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        exc = self.failures.pop(operation, None)
        if exc is not None:
            raise exc

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    def find_patient(self, practice, *, first_name, last_name, date_of_birth):
        self._enter("find_patient")
        return self.patients.get((first_name.lower(), last_name.lower(), date_of_birth))

    def create_patient(self, practice, *, first_name, last_name, date_of_birth, phone, email):
        self._enter("create_patient")
        patient_id = self._next_id("patient")
        self.patients[(first_name.lower(), last_name.lower(), date_of_birth)] = patient_id
        return patient_id

    def list_appointment_types(self, practice):
        self._enter("list_appointment_types")
        return list(self.types)

    def search_slots(
        self, practice, *, provider_ids, operatory_ids, appointment_type_id, start_date, days, slot_length,
    ):
        self._enter("search_slots")
        end_date = start_date + timedelta(days=days)
        tz = ZoneInfo(practice.timezone)
        with self._lock:
            return [
                s for s in self.slots
                if start_date <= s.start.astimezone(tz).date() < end_date
                and s.slot_id not in self._held_slot_ids
            ]

    def hold_slot(self, practice, slot, *, patient_id, duration_minutes, appointment_type_id=None):
        self._enter("hold_slot")
        with self._lock:
            if slot.slot_id in self._held_slot_ids:
                raise SlotConflictError("slot is not available", status_code=409)
            self._held_slot_ids.add(slot.slot_id)
            hold_id = self._next_id("hold")
            self.holds[hold_id] = (slot, patient_id)
        return Hold(hold_id=hold_id, expires_at=self.clock() + timedelta(minutes=self.hold_minutes))

    def confirm_booking(self, practice, hold_id, *, note=None):
        self._enter("confirm_booking")
        if hold_id not in self.holds:
            raise SlotConflictError("hold not found", status_code=409)
        appointment_id = self._next_id("appt")
        self.appointments[appointment_id] = hold_id
        return appointment_id


class KeywordClassifier:
    """Matches when any candidate keyword appears in the request."""

    def __init__(self):
        self.calls: list[str] = []
        self.error: Exception | None = None

    def match_intent(self, free_text, candidates):
        self.calls.append(free_text)
        if self.error is not None:
            raise ClassificationError(str(self.error))
        text = free_text.lower()
        for candidate in candidates:
            keywords = [k.strip() for k in candidate["keywords"].split(",") if k.strip()]
            if any(k in text for k in keywords):
                return candidate["id"]
        return None


def state_at(stage=None, *, booking=None, patient=None, call_id: str = "call-1") -> ConversationState:
    """Conversation state built through the merge engine, as handlers see it."""
    return merge_state(
        ConversationState.new(call_id, "practice-1"),
        StateUpdate(stage=stage, booking=booking, patient=patient),
    )


def identified_patient(patient_id: str = "pt-1") -> PatientUpdate:
    return PatientUpdate(
        status=PatientStatus.IDENTIFIED,
        external_patient_id=patient_id,
        collected_fields={"first_name": "Ada", "last_name": "Lovelace"},
    )


def presented_state(slots: Sequence[Slot], **booking) -> ConversationState:
    """Cleaning booking for an identified patient with *slots* presented."""
    return state_at(
        Stage.SLOTS_PRESENTED,
        booking=BookingUpdate(
            appointment_type_id="100",
            appointment_type_name="Adult Cleaning",
            spoken_name="cleaning",
            duration_minutes=30,
            requested_date="2026-03-03",
            candidate_slots=tuple(slots),
            **booking,
        ),
        patient=identified_patient(),
    )
