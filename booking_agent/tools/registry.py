"""Tool registry: every :class:`ToolKind` maps to its argument model and handler."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from booking_agent.models import ConversationState
from booking_agent.tools.appointment_type import FindAppointmentTypeArgs, find_appointment_type
from booking_agent.tools.availability import CheckSlotsArgs, SelectSlotArgs, check_available_slots, select_slot
from booking_agent.tools.base import HandlerContext, HandlerResult, ToolKind
from booking_agent.tools.booking import ConfirmBookingArgs, HoldSlotArgs, confirm_booking, hold_slot
from booking_agent.tools.patient import IdentifyPatientArgs, identify_or_create_patient

Handler = Callable[[ConversationState, Any, HandlerContext], HandlerResult]


@dataclass(frozen=True)
class ToolSpec:
    kind: ToolKind
    args_model: type[BaseModel]
    handler: Handler


TOOL_REGISTRY: dict[ToolKind, ToolSpec] = {
    spec.kind: spec
    for spec in (
        ToolSpec(ToolKind.FIND_APPOINTMENT_TYPE, FindAppointmentTypeArgs, find_appointment_type),
        ToolSpec(ToolKind.IDENTIFY_OR_CREATE_PATIENT, IdentifyPatientArgs, identify_or_create_patient),
        ToolSpec(ToolKind.CHECK_AVAILABLE_SLOTS, CheckSlotsArgs, check_available_slots),
        ToolSpec(ToolKind.SELECT_SLOT, SelectSlotArgs, select_slot),
        ToolSpec(ToolKind.HOLD_SLOT, HoldSlotArgs, hold_slot),
        ToolSpec(ToolKind.CONFIRM_BOOKING, ConfirmBookingArgs, confirm_booking),
    )
}

_missing = set(ToolKind) - set(TOOL_REGISTRY)
if _missing:
    raise RuntimeError(f"Tools without a handler: {sorted(k.value for k in _missing)}")
