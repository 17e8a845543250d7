"""Domain types shared by the dispatcher, the handlers and the state store.

``ConversationState`` and its sub-records are frozen pydantic models: a
handler never edits state in place, it describes a change with one of the
``*Update`` models and hands it to :mod:`booking_agent.state.merge`.

In an update model a field counts as supplied only when it appears in
``model_fields_set``.  Passing ``None`` explicitly clears a nullable field;
leaving it out keeps the previous value.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class Stage(str, Enum):
    """Coarse phase of the booking conversation, in forward order."""

    GREETING = "GREETING"
    APPOINTMENT_TYPE_KNOWN = "APPOINTMENT_TYPE_KNOWN"
    PATIENT_IDENTIFIED = "PATIENT_IDENTIFIED"
    SLOTS_PRESENTED = "SLOTS_PRESENTED"
    SLOT_HELD = "SLOT_HELD"
    CONFIRMED = "CONFIRMED"
    BOOKED = "BOOKED"
    FAILED = "FAILED"


class PatientStatus(str, Enum):
    AWAITING_IDENTIFIER = "AWAITING_IDENTIFIER"
    IDENTIFIED = "IDENTIFIED"
    CREATION_IN_PROGRESS = "CREATION_IN_PROGRESS"


class Slot(BaseModel):
    """One open appointment time returned by the scheduling system."""

    model_config = ConfigDict(frozen=True)

    slot_id: str
    start: datetime
    end: datetime
    provider_id: str
    operatory_id: str | None = None

    @staticmethod
    def make_id(provider_id: str, operatory_id: str | None, start: datetime) -> str:
        """Deterministic id so the same opening compares equal across searches."""
        return f"{provider_id}:{operatory_id or '-'}:{start.astimezone(UTC).strftime('%Y%m%dT%H%M')}"


class AppointmentType(BaseModel):
    """Appointment type as defined in the practice-management system."""

    model_config = ConfigDict(frozen=True)

    appointment_type_id: str
    name: str
    duration_minutes: int


class Hold(BaseModel):
    model_config = ConfigDict(frozen=True)

    hold_id: str
    expires_at: datetime


class BookingRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    appointment_type_id: str | None = None
    appointment_type_name: str | None = None
    spoken_name: str | None = None
    duration_minutes: int | None = None
    is_urgent: bool = False
    requested_date: str | None = None
    time_preference: str | None = None
    candidate_slots: tuple[Slot, ...] = ()
    selected_slot: Slot | None = None
    hold_id: str | None = None
    hold_expires_at: datetime | None = None
    appointment_id: str | None = None


class PatientRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: PatientStatus = PatientStatus.AWAITING_IDENTIFIER
    external_patient_id: str | None = None
    collected_fields: Mapping[str, str] = Field(default_factory=dict)
    is_new_patient: bool | None = None


class ConversationState(BaseModel):
    """Durable per-call record of booking progress, keyed by ``call_id``."""

    model_config = ConfigDict(frozen=True)

    call_id: str
    practice_id: str
    stage: Stage = Stage.GREETING
    booking: BookingRecord = Field(default_factory=BookingRecord)
    patient: PatientRecord = Field(default_factory=PatientRecord)
    last_tool_call_id: str | None = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def new(cls, call_id: str, practice_id: str) -> ConversationState:
        return cls(call_id=call_id, practice_id=practice_id)


# ── Partial updates ─────────────────────────────────────────────────


class BookingUpdate(BaseModel):
    appointment_type_id: str | None = None
    appointment_type_name: str | None = None
    spoken_name: str | None = None
    duration_minutes: int | None = None
    is_urgent: bool | None = None
    requested_date: str | None = None
    time_preference: str | None = None
    candidate_slots: tuple[Slot, ...] | None = None
    selected_slot: Slot | None = None
    hold_id: str | None = None
    hold_expires_at: datetime | None = None
    appointment_id: str | None = None


class PatientUpdate(BaseModel):
    status: PatientStatus | None = None
    external_patient_id: str | None = None
    collected_fields: Mapping[str, str] | None = None
    is_new_patient: bool | None = None


class StateUpdate(BaseModel):
    stage: Stage | None = None
    booking: BookingUpdate | None = None
    patient: PatientUpdate | None = None
    last_tool_call_id: str | None = None
    version: int | None = None
    updated_at: datetime | None = None
