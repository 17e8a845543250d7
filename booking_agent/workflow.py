"""Booking workflow: the stage graph and the guards threaded through handlers.

Stages only move forward along ``TRANSITIONS``.  Two exits are allowed from
any live stage: FAILED (terminal, unrecoverable adapter error) and the lazy
hold-expiry regression from SLOT_HELD / CONFIRMED back to SLOTS_PRESENTED.

Handlers ask for a *target* stage with :func:`advance`.  A target that lies
behind the current stage is a no-op (e.g. the caller gives their name after
times were already presented), so stage is monotonic without every handler
having to compare orders itself.

Within the coarse stage the booking sub-flow has its own phases, derived by
:func:`booking_phase`:

    NO_SLOT → SLOTS_PRESENTED → SLOT_SELECTED → SLOT_HELD → BOOKED
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum

from booking_agent.models import ConversationState, PatientStatus, Stage

logger = logging.getLogger(__name__)

STAGE_ORDER: dict[Stage, int] = {stage: index for index, stage in enumerate(Stage)}

TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.GREETING: frozenset({Stage.APPOINTMENT_TYPE_KNOWN, Stage.PATIENT_IDENTIFIED}),
    Stage.APPOINTMENT_TYPE_KNOWN: frozenset({Stage.PATIENT_IDENTIFIED, Stage.SLOTS_PRESENTED}),
    Stage.PATIENT_IDENTIFIED: frozenset({Stage.SLOTS_PRESENTED}),
    Stage.SLOTS_PRESENTED: frozenset({Stage.SLOT_HELD}),
    Stage.SLOT_HELD: frozenset({Stage.CONFIRMED, Stage.BOOKED, Stage.SLOTS_PRESENTED}),
    Stage.CONFIRMED: frozenset({Stage.BOOKED, Stage.SLOTS_PRESENTED}),
    Stage.BOOKED: frozenset(),
    Stage.FAILED: frozenset(),
}

TERMINAL_STAGES = frozenset({Stage.BOOKED, Stage.FAILED})

# Stages from which a new slot search may still replace the candidate list.
SEARCHABLE_STAGES = frozenset({
    Stage.GREETING,
    Stage.APPOINTMENT_TYPE_KNOWN,
    Stage.PATIENT_IDENTIFIED,
    Stage.SLOTS_PRESENTED,
})


class InvalidTransitionError(Exception):
    """A handler asked for a forward jump the stage graph does not allow."""


class BookingPhase(str, Enum):
    NO_SLOT = "NO_SLOT"
    SLOTS_PRESENTED = "SLOTS_PRESENTED"
    SLOT_SELECTED = "SLOT_SELECTED"
    SLOT_HELD = "SLOT_HELD"
    BOOKED = "BOOKED"
    FAILED = "FAILED"


def is_allowed(current: Stage, target: Stage) -> bool:
    if target == current:
        return True
    if target == Stage.FAILED:
        return current not in TERMINAL_STAGES
    return target in TRANSITIONS[current]


def is_regression(current: Stage, target: Stage) -> bool:
    return target != Stage.FAILED and STAGE_ORDER[target] < STAGE_ORDER[current]


def advance(current: Stage, target: Stage) -> Stage:
    """Return the stage after asking to move from *current* to *target*.

    Backward targets keep *current*; the only backward move is
    :func:`expire_hold_stage`.  A forward jump outside the graph raises.
    """
    if is_regression(current, target):
        return current
    if not is_allowed(current, target):
        raise InvalidTransitionError(f"{current.value} -> {target.value} is not a valid transition")
    if target != current:
        logger.debug("Stage %s -> %s", current.value, target.value)
    return target


def expire_hold_stage(current: Stage) -> Stage:
    """Hold-expiry regression back to SLOTS_PRESENTED."""
    if current not in (Stage.SLOT_HELD, Stage.CONFIRMED):
        raise InvalidTransitionError(f"No hold to expire from {current.value}")
    logger.debug("Stage %s -> SLOTS_PRESENTED (hold expired)", current.value)
    return Stage.SLOTS_PRESENTED


def booking_phase(state: ConversationState) -> BookingPhase:
    if state.stage == Stage.FAILED:
        return BookingPhase.FAILED
    if state.stage == Stage.BOOKED:
        return BookingPhase.BOOKED
    if state.stage in (Stage.SLOT_HELD, Stage.CONFIRMED):
        return BookingPhase.SLOT_HELD
    if state.stage == Stage.SLOTS_PRESENTED:
        if state.booking.selected_slot is not None:
            return BookingPhase.SLOT_SELECTED
        return BookingPhase.SLOTS_PRESENTED
    return BookingPhase.NO_SLOT


# ── Guards ──────────────────────────────────────────────────────────


def has_appointment_type(state: ConversationState) -> bool:
    return state.booking.appointment_type_id is not None


def is_patient_identified(state: ConversationState) -> bool:
    return (
        state.patient.status == PatientStatus.IDENTIFIED
        and state.patient.external_patient_id is not None
    )


def can_change_appointment_type(state: ConversationState) -> bool:
    return STAGE_ORDER[state.stage] < STAGE_ORDER[Stage.SLOTS_PRESENTED]


def can_search(state: ConversationState) -> bool:
    return state.stage in SEARCHABLE_STAGES and has_appointment_type(state)


def can_select(state: ConversationState) -> bool:
    return state.stage == Stage.SLOTS_PRESENTED and bool(state.booking.candidate_slots)


def can_hold(state: ConversationState) -> bool:
    return state.stage == Stage.SLOTS_PRESENTED and state.booking.selected_slot is not None


def has_live_hold(state: ConversationState) -> bool:
    return state.stage in (Stage.SLOT_HELD, Stage.CONFIRMED) and state.booking.hold_id is not None


def is_hold_expired(state: ConversationState, now: datetime) -> bool:
    """A hold without an expiry is treated as expired; it cannot be trusted."""
    expires_at = state.booking.hold_expires_at
    return expires_at is None or now > expires_at
