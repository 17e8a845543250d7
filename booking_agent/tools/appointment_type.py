"""``find_appointment_type``: map the caller's reason for calling onto one of
the practice's bookable appointment types."""

from __future__ import annotations

import logging
import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from booking_agent.errors import ClassificationError
from booking_agent.models import AppointmentType, BookingUpdate, ConversationState, PatientUpdate, Stage, StateUpdate
from booking_agent.practices import AppointmentTypeSettings, PracticeConfig
from booking_agent.state.merge import merge_state
from booking_agent.tools.base import (
    FollowUpToolCall,
    HandlerContext,
    HandlerResult,
    ToolKind,
    fail,
    fail_from_exception,
    ok,
    unchanged,
)
from booking_agent.workflow import TERMINAL_STAGES, advance, can_change_appointment_type, is_patient_identified

logger = logging.getLogger(__name__)

URGENT_KEYWORDS = (
    "pain", "painful", "toothache", "emergency", "hurts", "hurting", "broken",
    "chipped", "cracked", "urgent", "abscess", "swelling", "swollen", "infection", "bleeding",
)
_URGENT_RE = re.compile(r"\b(" + "|".join(URGENT_KEYWORDS) + r")\b", re.IGNORECASE)


class FindAppointmentTypeArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    patient_request: str = Field(min_length=1)
    patient_status: Literal["new", "existing"] | None = None


def mentions_urgency(text: str) -> bool:
    return _URGENT_RE.search(text) is not None


def bookable_types(
    types: list[AppointmentType], practice: PracticeConfig,
) -> list[tuple[AppointmentType, AppointmentTypeSettings]]:
    """Types the practice allows voice booking for and gave keywords to."""
    result = []
    for appointment_type in types:
        settings = practice.type_settings(appointment_type.appointment_type_id)
        if settings is None or not settings.bookable_online or not settings.keywords:
            continue
        result.append((appointment_type, settings))
    return result


def _next_prompt(state: ConversationState, is_urgent: bool) -> str:
    if is_urgent:
        return "Let me find the earliest time we can see you."
    if not is_patient_identified(state):
        return "To get started, could I have your first name?"
    return "What day works best for you?"


def find_appointment_type(
    state: ConversationState, args: FindAppointmentTypeArgs, ctx: HandlerContext,
) -> HandlerResult:
    if state.stage in TERMINAL_STAGES:
        return unchanged(state, fail("CALL_CLOSED"))
    if not can_change_appointment_type(state):
        return unchanged(state, fail("APPOINTMENT_TYPE_LOCKED"))

    try:
        types = ctx.scheduler.list_appointment_types(ctx.practice)
    except Exception as exc:
        return unchanged(state, fail_from_exception(exc, operation="list_appointment_types"))

    candidates = bookable_types(types, ctx.practice)
    if not candidates:
        logger.warning("Practice %s has no voice-bookable appointment types", ctx.practice.practice_id)
        return unchanged(state, fail("NO_APPOINTMENT_TYPES"))

    by_id = {t.appointment_type_id: (t, s) for t, s in candidates}
    try:
        matched_id = ctx.classifier.match_intent(
            args.patient_request,
            [
                {"id": t.appointment_type_id, "name": t.name, "keywords": ", ".join(s.keywords)}
                for t, s in candidates
            ],
        )
    except ClassificationError as exc:
        logger.error("Appointment type classification failed: %s", exc)
        return unchanged(state, fail("SYSTEM_ERROR"))

    if matched_id is None or matched_id not in by_id:
        logger.info("No appointment type matched %r", args.patient_request)
        return unchanged(state, fail("APPOINTMENT_TYPE_NOT_MATCHED"))

    appointment_type, settings = by_id[matched_id]
    is_urgent = settings.urgent or mentions_urgency(args.patient_request)
    spoken_name = settings.spoken_name or appointment_type.name

    patient_update = None
    if args.patient_status is not None:
        patient_update = PatientUpdate(is_new_patient=args.patient_status == "new")

    new_state = merge_state(
        state,
        StateUpdate(
            stage=advance(state.stage, Stage.APPOINTMENT_TYPE_KNOWN),
            booking=BookingUpdate(
                appointment_type_id=appointment_type.appointment_type_id,
                appointment_type_name=appointment_type.name,
                spoken_name=spoken_name,
                duration_minutes=appointment_type.duration_minutes,
                is_urgent=is_urgent,
            ),
            patient=patient_update,
        ),
    )
    logger.info(
        "Call %s matched appointment type %s (%s) urgent=%s",
        state.call_id, appointment_type.appointment_type_id, appointment_type.name, is_urgent,
    )

    opener = "I'm sorry to hear that. " if is_urgent else "Great. "
    outcome = ok(
        f"{opener}I'll book you in for a {spoken_name}. {_next_prompt(new_state, is_urgent)}",
        appointment_type_id=appointment_type.appointment_type_id,
        appointment_type_name=appointment_type.name,
        spoken_name=spoken_name,
        duration_minutes=appointment_type.duration_minutes,
        is_urgent=is_urgent,
    )
    follow_up = FollowUpToolCall(name=ToolKind.CHECK_AVAILABLE_SLOTS.value) if is_urgent else None
    return HandlerResult(outcome=outcome, state=new_state, follow_up=follow_up)
