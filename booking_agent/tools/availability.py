"""``check_available_slots`` and ``select_slot``.

A search replaces the presented candidates wholesale and clears any earlier
selection, so a selection always refers to the slots the caller last heard.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from booking_agent.models import BookingUpdate, ConversationState, Slot, Stage, StateUpdate
from booking_agent.slots import describe_options, filter_by_bucket, format_slot, match_selection
from booking_agent.state.merge import merge_state
from booking_agent.tools.base import HandlerContext, HandlerResult, fail, fail_from_exception, ok, unchanged
from booking_agent.workflow import (
    SEARCHABLE_STAGES,
    TERMINAL_STAGES,
    advance,
    can_select,
    has_appointment_type,
    has_live_hold,
    is_patient_identified,
)

logger = logging.getLogger(__name__)

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%B %d %Y", "%b %d %Y")

TimePreference = Literal["early", "morning", "midday", "afternoon", "evening", "late"]


class InvalidDateError(ValueError):
    pass


class CheckSlotsArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    requested_date: str | None = None
    time_preference: TimePreference | None = None
    days: int | None = Field(default=None, ge=1, le=14)

    @field_validator("requested_date", mode="before")
    @classmethod
    def _blank_is_absent(cls, value):
        return value or None

    @field_validator("time_preference", mode="before")
    @classmethod
    def _lower(cls, value):
        if isinstance(value, str):
            return value.strip().lower() or None
        return value


class SelectSlotArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    user_selection: str = Field(min_length=1)


def parse_requested_date(value: str, today: date) -> date:
    """Parse ISO or spoken-style dates.

    A bare weekday or "next <weekday>" means the next such day after today;
    "this <weekday>" includes today.
    """
    text = " ".join(value.lower().split())
    if text == "today":
        return today
    if text == "tomorrow":
        return today + timedelta(days=1)
    qualifier, _, weekday = text.rpartition(" ")
    if weekday in _WEEKDAYS and qualifier in ("", "next", "this"):
        ahead = (_WEEKDAYS.index(weekday) - today.weekday()) % 7
        if ahead == 0 and qualifier != "this":
            ahead = 7
        return today + timedelta(days=ahead)

    cleaned = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", value.strip(), flags=re.IGNORECASE)
    cleaned = " ".join(cleaned.replace(",", " ").split())
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    raise InvalidDateError(value)


def slot_summary(slots: Iterable[Slot], timezone: str) -> list[dict[str, str]]:
    return [
        {"slot_id": s.slot_id, "start": s.start.isoformat(), "display": format_slot(s, timezone)}
        for s in slots
    ]


def search_candidates(
    state: ConversationState,
    ctx: HandlerContext,
    *,
    start_date: date,
    bucket: str | None,
    days: int | None = None,
    exclude: Iterable[str] = (),
) -> list[Slot]:
    """Search the adapter and keep the first presentable slots.

    Slots already in the past, outside *bucket*, or listed in *exclude* are
    dropped.  Adapter exceptions propagate.
    """
    practice = ctx.practice
    booking = state.booking
    found = ctx.scheduler.search_slots(
        practice,
        provider_ids=practice.provider_ids,
        operatory_ids=practice.operatory_ids,
        appointment_type_id=booking.appointment_type_id,
        start_date=start_date,
        days=days or ctx.settings.slot_search_days,
        slot_length=booking.duration_minutes or 30,
    )
    excluded = set(exclude)
    now = ctx.now()
    usable = [s for s in found if s.slot_id not in excluded and s.start > now]
    usable = filter_by_bucket(usable, bucket, practice.timezone)
    usable.sort(key=lambda s: s.start)
    return usable[: ctx.settings.max_slots_per_turn]


def research_start_date(state: ConversationState, ctx: HandlerContext) -> date:
    """Start of a follow-up search: the requested date unless it has passed."""
    today = ctx.today()
    if state.booking.requested_date:
        requested = date.fromisoformat(state.booking.requested_date)
        if requested > today:
            return requested
    return today


# ── check_available_slots ───────────────────────────────────────────


def check_available_slots(
    state: ConversationState, args: CheckSlotsArgs, ctx: HandlerContext,
) -> HandlerResult:
    if state.stage in TERMINAL_STAGES:
        return unchanged(state, fail("CALL_CLOSED"))
    if not has_appointment_type(state):
        return unchanged(state, fail("APPOINTMENT_TYPE_REQUIRED"))
    if state.stage not in SEARCHABLE_STAGES:
        return unchanged(state, fail("SLOT_ALREADY_HELD"))

    today = ctx.today()
    requested: date | None = None
    if args.requested_date:
        try:
            requested = parse_requested_date(args.requested_date, today)
        except InvalidDateError:
            return unchanged(state, fail("INVALID_DATE"))
        if requested < today:
            return unchanged(state, fail("DATE_IN_PAST"))
        if requested > today + timedelta(days=ctx.settings.booking_horizon_days):
            return unchanged(state, fail("DATE_TOO_FAR"))

    if requested is not None:
        start_date = requested
    elif state.booking.is_urgent:
        start_date = today
    else:
        start_date = today + timedelta(days=1)

    bucket = args.time_preference or state.booking.time_preference
    try:
        slots = search_candidates(state, ctx, start_date=start_date, bucket=bucket, days=args.days)
    except Exception as exc:
        return unchanged(state, fail_from_exception(exc, operation="search_slots"))

    if not slots:
        logger.info("Call %s: no availability from %s (bucket=%s)", state.call_id, start_date, bucket)
        return unchanged(state, fail("NO_AVAILABILITY", requested_date=start_date.isoformat()))

    new_state = merge_state(
        state,
        StateUpdate(
            stage=advance(state.stage, Stage.SLOTS_PRESENTED),
            booking=BookingUpdate(
                requested_date=start_date.isoformat(),
                time_preference=bucket,
                candidate_slots=tuple(slots),
                selected_slot=None,
            ),
        ),
    )
    tz = ctx.practice.timezone
    opener = "Here's the earliest I have. " if state.booking.is_urgent and requested is None else ""
    return HandlerResult(
        outcome=ok(
            f"{opener}{describe_options(slots, tz)} Which time works best for you?",
            slots=slot_summary(slots, tz),
        ),
        state=new_state,
    )


# ── select_slot ─────────────────────────────────────────────────────


def apply_selection(
    state: ConversationState, user_selection: str, ctx: HandlerContext,
) -> tuple[ConversationState, str | None]:
    """Match *user_selection* against the candidates.

    Returns the state with ``selected_slot`` set on a unique match, or the
    unchanged state and the spoken list of options to re-present.
    """
    tz = ctx.practice.timezone
    candidates = state.booking.candidate_slots
    result = match_selection(user_selection, candidates, tz)
    if result.selected is not None:
        selected = merge_state(state, StateUpdate(booking=BookingUpdate(selected_slot=result.selected)))
        return selected, None
    options = result.options if result.options else candidates
    return state, describe_options(options, tz)


def select_slot(state: ConversationState, args: SelectSlotArgs, ctx: HandlerContext) -> HandlerResult:
    if state.stage in TERMINAL_STAGES:
        return unchanged(state, fail("CALL_CLOSED"))
    if has_live_hold(state):
        return unchanged(state, fail("SLOT_ALREADY_HELD"))
    if not can_select(state):
        return unchanged(state, fail("SLOTS_NOT_PRESENTED"))

    new_state, reprompt = apply_selection(state, args.user_selection, ctx)
    if reprompt is not None:
        logger.info("Call %s: selection %r was not unique", state.call_id, args.user_selection)
        return unchanged(state, fail("SLOT_SELECTION_UNCLEAR", extra=reprompt))

    slot = new_state.booking.selected_slot
    display = format_slot(slot, ctx.practice.timezone)
    if is_patient_identified(new_state):
        follow = "Shall I reserve it for you?"
    else:
        follow = "Before I reserve it, could I have your first name?"
    return HandlerResult(
        outcome=ok(f"{display}, got it. {follow}", slot_id=slot.slot_id, display=display),
        state=new_state,
    )
