"""Shared plumbing for the booking tool handlers.

A handler is a plain function ``(state, args, ctx) -> HandlerResult``.  It
never saves state and never raises for business failures: it returns the
outcome to speak, the next state (the *same object* when nothing changed)
and optionally a tool call the voice platform should invoke next.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from booking_agent import config
from booking_agent.errors import (
    CATEGORY_DEFAULT_CODES,
    ErrorCategory,
    ErrorMessage,
    classify_exception,
    get_error,
)
from booking_agent.models import ConversationState, utcnow
from booking_agent.practices import PracticeConfig
from booking_agent.services.classifier import IntentClassifier
from booking_agent.services.nexhealth_client import SchedulingAdapter
from booking_agent.slots import to_local

logger = logging.getLogger(__name__)


class ToolKind(str, Enum):
    """Closed set of tools the voice assistant may call."""

    FIND_APPOINTMENT_TYPE = "find_appointment_type"
    IDENTIFY_OR_CREATE_PATIENT = "identify_or_create_patient"
    CHECK_AVAILABLE_SLOTS = "check_available_slots"
    SELECT_SLOT = "select_slot"
    HOLD_SLOT = "hold_slot"
    CONFIRM_BOOKING = "confirm_booking"

    @classmethod
    def parse(cls, name: str | None) -> ToolKind | None:
        if not name:
            return None
        try:
            return cls(name.strip())
        except ValueError:
            return None


@dataclass(frozen=True)
class WorkflowSettings:
    max_slots_per_turn: int = 4
    hold_minutes: int = 10
    slot_search_days: int = 7
    booking_horizon_days: int = 90

    @classmethod
    def from_config(cls) -> WorkflowSettings:
        return cls(
            max_slots_per_turn=config.MAX_SLOTS_PER_TURN,
            hold_minutes=config.HOLD_MINUTES,
            slot_search_days=config.SLOT_SEARCH_DAYS,
            booking_horizon_days=config.BOOKING_HORIZON_DAYS,
        )


@dataclass(frozen=True)
class HandlerContext:
    """Collaborators and settings a handler may use for one tool call."""

    practice: PracticeConfig
    scheduler: SchedulingAdapter
    classifier: IntentClassifier
    settings: WorkflowSettings = field(default_factory=WorkflowSettings)
    clock: Callable[[], datetime] = utcnow

    def now(self) -> datetime:
        return self.clock()

    def today(self) -> date:
        """Today in the practice's timezone."""
        return to_local(self.now(), self.practice.timezone).date()


@dataclass(frozen=True)
class ToolOutcome:
    """What the assistant says, plus structured data for the result object."""

    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    error: ErrorMessage | None = None

    @property
    def category(self) -> ErrorCategory | None:
        return self.error.category if self.error else None


@dataclass(frozen=True)
class FollowUpToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HandlerResult:
    outcome: ToolOutcome
    state: ConversationState
    follow_up: FollowUpToolCall | None = None


# ── Outcome helpers ─────────────────────────────────────────────────


def ok(message: str, **data: Any) -> ToolOutcome:
    return ToolOutcome(success=True, message=message, data=data)


def fail(code: str, *, extra: str | None = None, **data: Any) -> ToolOutcome:
    """Failure outcome with the code's pre-authored message.

    *extra* is appended to the spoken message (e.g. alternative times).
    """
    error = get_error(code)
    message = f"{error.message} {extra}" if extra else error.message
    return ToolOutcome(success=False, message=message, data=data, error=error)


def fail_from_exception(exc: BaseException, *, operation: str) -> ToolOutcome:
    """Classify a collaborator exception and log its raw text server-side only."""
    category = classify_exception(exc)
    if category == ErrorCategory.TECHNICAL:
        logger.error("%s failed: %s", operation, exc, exc_info=exc)
    else:
        logger.warning("%s failed (%s): %s", operation, category.value, exc)
    return fail(CATEGORY_DEFAULT_CODES[category])


def unchanged(state: ConversationState, outcome: ToolOutcome) -> HandlerResult:
    return HandlerResult(outcome=outcome, state=state)
