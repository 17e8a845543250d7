"""``hold_slot`` and ``confirm_booking``.

Two callers can want the same opening.  Nothing here locks slots: the
scheduling system's hold call is the arbiter, and the loser is moved back to
a fresh list of alternatives that excludes the slot it lost.

A hold is only trusted until ``hold_expires_at``.  Expiry is checked lazily
when the caller confirms; an expired hold is dropped and a new search is
presented instead of attempting the conversion.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict

from booking_agent.errors import (
    AdapterTimeoutError,
    NotFoundError,
    RateLimitError,
    SlotConflictError,
)
from booking_agent.models import BookingUpdate, ConversationState, Slot, Stage, StateUpdate
from booking_agent.slots import describe_options, format_slot
from booking_agent.state.merge import merge_state
from booking_agent.tools.availability import apply_selection, research_start_date, search_candidates, slot_summary
from booking_agent.tools.base import HandlerContext, HandlerResult, fail, fail_from_exception, ok, unchanged
from booking_agent.workflow import (
    advance,
    expire_hold_stage,
    has_live_hold,
    is_hold_expired,
    is_patient_identified,
)

logger = logging.getLogger(__name__)


class HoldSlotArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    user_selection: str | None = None


class ConfirmBookingArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    confirmed: bool | None = None


def _release_and_represent(
    state: ConversationState, ctx: HandlerContext, taken: Slot | None, code: str,
) -> HandlerResult:
    """Drop the selection (and any hold), search again without *taken*, and
    present the alternatives alongside the *code* failure."""
    exclude = {taken.slot_id} if taken is not None else set()
    try:
        alternatives = search_candidates(
            state, ctx,
            start_date=research_start_date(state, ctx),
            bucket=state.booking.time_preference,
            exclude=exclude,
        )
    except Exception as exc:
        logger.warning("Call %s: re-search after %s failed: %s", state.call_id, code, exc)
        alternatives = [s for s in state.booking.candidate_slots if s.slot_id not in exclude]

    stage = expire_hold_stage(state.stage) if state.stage in (Stage.SLOT_HELD, Stage.CONFIRMED) else state.stage
    new_state = merge_state(
        state,
        StateUpdate(
            stage=stage,
            booking=BookingUpdate(
                candidate_slots=tuple(alternatives),
                selected_slot=None,
                hold_id=None,
                hold_expires_at=None,
            ),
        ),
    )
    tz = ctx.practice.timezone
    if alternatives:
        extra = f"{describe_options(alternatives, tz)} Would one of those work instead?"
    else:
        extra = "Would you like me to check a different day?"
    logger.info(
        "Call %s: %s on %s, offering %d alternative(s)",
        state.call_id, code, taken.slot_id if taken else "-", len(alternatives),
    )
    return HandlerResult(
        outcome=fail(code, extra=extra, slots=slot_summary(alternatives, tz)),
        state=new_state,
    )


# ── hold_slot ───────────────────────────────────────────────────────


def hold_slot(state: ConversationState, args: HoldSlotArgs, ctx: HandlerContext) -> HandlerResult:
    if state.stage in (Stage.BOOKED, Stage.FAILED):
        return unchanged(state, fail("CALL_CLOSED"))
    if has_live_hold(state):
        return unchanged(state, fail("SLOT_ALREADY_HELD"))
    if state.stage != Stage.SLOTS_PRESENTED or not state.booking.candidate_slots:
        return unchanged(state, fail("SLOTS_NOT_PRESENTED"))

    working = state
    if args.user_selection:
        working, reprompt = apply_selection(state, args.user_selection, ctx)
        if reprompt is not None:
            return unchanged(state, fail("SLOT_SELECTION_UNCLEAR", extra=reprompt))

    slot = working.booking.selected_slot
    if slot is None:
        return unchanged(state, fail("NO_SLOT_SELECTED"))
    if not is_patient_identified(working):
        return HandlerResult(outcome=fail("PATIENT_REQUIRED"), state=working)

    booking = working.booking
    try:
        hold = ctx.scheduler.hold_slot(
            ctx.practice,
            slot,
            patient_id=working.patient.external_patient_id,
            duration_minutes=booking.duration_minutes or int((slot.end - slot.start).total_seconds() // 60),
            appointment_type_id=booking.appointment_type_id,
        )
    except SlotConflictError:
        return _release_and_represent(working, ctx, slot, "SLOT_UNAVAILABLE")
    except Exception as exc:
        return HandlerResult(outcome=fail_from_exception(exc, operation="hold_slot"), state=working)

    new_state = merge_state(
        working,
        StateUpdate(
            stage=advance(working.stage, Stage.SLOT_HELD),
            booking=BookingUpdate(hold_id=hold.hold_id, hold_expires_at=hold.expires_at),
        ),
    )
    display = format_slot(slot, ctx.practice.timezone)
    spoken = booking.spoken_name or booking.appointment_type_name or "appointment"
    logger.info("Call %s: holding %s as %s", state.call_id, slot.slot_id, hold.hold_id)
    return HandlerResult(
        outcome=ok(
            f"I'm holding {display} for you. That's a {spoken}. Shall I go ahead and book it?",
            hold_id=hold.hold_id,
            hold_expires_at=hold.expires_at.isoformat(),
            slot_id=slot.slot_id,
            display=display,
        ),
        state=new_state,
    )


# ── confirm_booking ─────────────────────────────────────────────────


def confirm_booking(state: ConversationState, args: ConfirmBookingArgs, ctx: HandlerContext) -> HandlerResult:
    booking = state.booking
    if state.stage == Stage.BOOKED:
        return unchanged(
            state,
            ok("Your appointment is already booked.", appointment_id=booking.appointment_id),
        )
    if state.stage == Stage.FAILED:
        return unchanged(state, fail("BOOKING_FAILED"))
    if state.stage not in (Stage.SLOT_HELD, Stage.CONFIRMED) or booking.hold_id is None:
        return unchanged(state, fail("HOLD_REQUIRED"))
    if args.confirmed is None:
        return unchanged(state, fail("CONFIRMATION_REQUIRED"))
    if not args.confirmed:
        return unchanged(state, fail("BOOKING_NOT_CONFIRMED"))

    if is_hold_expired(state, ctx.now()):
        logger.info("Call %s: hold %s expired at %s", state.call_id, booking.hold_id, booking.hold_expires_at)
        return _release_and_represent(state, ctx, None, "HOLD_EXPIRED")

    spoken = booking.spoken_name or booking.appointment_type_name or "appointment"
    try:
        appointment_id = ctx.scheduler.confirm_booking(
            ctx.practice, booking.hold_id, note=f"Booked by voice assistant: {spoken}",
        )
    except (SlotConflictError, NotFoundError) as exc:
        logger.warning("Call %s: hold %s no longer valid: %s", state.call_id, booking.hold_id, exc)
        return _release_and_represent(state, ctx, None, "HOLD_EXPIRED")
    except AdapterTimeoutError as exc:
        logger.warning("Call %s: confirming hold %s timed out: %s", state.call_id, booking.hold_id, exc)
        pending = merge_state(state, StateUpdate(stage=advance(state.stage, Stage.CONFIRMED)))
        return HandlerResult(outcome=fail("UPSTREAM_TIMEOUT"), state=pending)
    except RateLimitError as exc:
        return unchanged(state, fail_from_exception(exc, operation="confirm_booking"))
    except Exception as exc:
        logger.error("Call %s: booking failed for hold %s: %s", state.call_id, booking.hold_id, exc, exc_info=exc)
        failed = merge_state(state, StateUpdate(stage=Stage.FAILED))
        return HandlerResult(outcome=fail("BOOKING_FAILED"), state=failed)

    new_state = merge_state(
        state,
        StateUpdate(
            stage=advance(state.stage, Stage.BOOKED),
            booking=BookingUpdate(
                appointment_id=appointment_id,
                candidate_slots=None,
                hold_id=None,
                hold_expires_at=None,
            ),
        ),
    )
    display = format_slot(booking.selected_slot, ctx.practice.timezone) if booking.selected_slot else "your time"
    logger.info("Call %s: booked appointment %s", state.call_id, appointment_id)
    return HandlerResult(
        outcome=ok(
            f"You're all set! I've booked your {spoken} for {display}. "
            "Is there anything else I can help you with today?",
            appointment_id=appointment_id,
            display=display,
        ),
        state=new_state,
    )
