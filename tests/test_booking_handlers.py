"""Tests for hold_slot and confirm_booking."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from booking_agent.errors import (
    AdapterTimeoutError,
    NotFoundError,
    RateLimitError,
    SchedulingAPIError,
)
from booking_agent.models import BookingUpdate, Stage
from booking_agent.tools.booking import ConfirmBookingArgs, HoldSlotArgs, confirm_booking, hold_slot
from tests.fakes import NOW, TUESDAY, WEDNESDAY, local_slot, presented_state, state_at

PRESENTED = [local_slot(TUESDAY, 9), local_slot(TUESDAY, 14), local_slot(TUESDAY, 14, 30)]


def _hold(state, ctx, selection: str | None = None):
    return hold_slot(state, HoldSlotArgs(user_selection=selection), ctx)


def _confirm(state, ctx, confirmed: bool = True):
    return confirm_booking(state, ConfirmBookingArgs(confirmed=confirmed), ctx)


def _held_state(ctx):
    result = _hold(presented_state(PRESENTED), ctx, "9 am")
    assert result.outcome.success
    return result.state


class TestHoldSlot:
    def test_holds_selected_slot(self, ctx, scheduler):
        result = _hold(presented_state(PRESENTED), ctx, "9 am")

        assert result.outcome.success
        booking = result.state.booking
        assert booking.selected_slot == local_slot(TUESDAY, 9)
        assert booking.hold_id == "hold-1"
        assert booking.hold_expires_at == NOW.replace(minute=10)
        assert result.state.stage == Stage.SLOT_HELD
        assert scheduler.holds["hold-1"] == (local_slot(TUESDAY, 9), "pt-1")
        assert "Shall I go ahead and book it?" in result.outcome.message

    def test_uses_previous_selection(self, ctx):
        state = presented_state(PRESENTED, selected_slot=local_slot(TUESDAY, 14))
        result = _hold(state, ctx)
        assert result.state.booking.hold_id is not None

    def test_requires_a_selection(self, ctx):
        state = presented_state(PRESENTED)
        result = _hold(state, ctx)
        assert result.outcome.error.code == "NO_SLOT_SELECTED"
        assert result.state is state

    def test_ambiguous_selection_is_not_held(self, ctx, scheduler):
        result = _hold(presented_state(PRESENTED), ctx, "in the afternoon")
        assert result.outcome.error.code == "SLOT_SELECTION_UNCLEAR"
        assert scheduler.count("hold_slot") == 0

    def test_requires_identified_patient_but_keeps_selection(self, ctx, scheduler):
        state = presented_state(PRESENTED).model_copy(update={"patient": state_at().patient})
        result = _hold(state, ctx, "9 am")

        assert result.outcome.error.code == "PATIENT_REQUIRED"
        assert result.state.booking.selected_slot == local_slot(TUESDAY, 9)
        assert scheduler.count("hold_slot") == 0

    def test_second_hold_is_rejected(self, ctx):
        held = _held_state(ctx)
        result = _hold(held, ctx, "2 pm")
        assert result.outcome.error.code == "SLOT_ALREADY_HELD"
        assert result.state is held


class TestConflictingCallers:
    def test_loser_gets_alternatives_without_the_taken_slot(self, ctx):
        first = _hold(presented_state(PRESENTED), ctx, "2 pm")
        assert first.outcome.success

        loser_state = presented_state(PRESENTED).model_copy(update={"call_id": "call-2"})
        second = _hold(loser_state, ctx, "2 pm")

        assert second.outcome.error.code == "SLOT_UNAVAILABLE"
        assert "just taken" in second.outcome.message
        booking = second.state.booking
        assert local_slot(TUESDAY, 14) not in booking.candidate_slots
        assert booking.candidate_slots[0] == local_slot(TUESDAY, 9)
        assert booking.selected_slot is None
        assert booking.hold_id is None
        assert second.state.stage == Stage.SLOTS_PRESENTED
        assert all(s["slot_id"] != local_slot(TUESDAY, 14).slot_id for s in second.outcome.data["slots"])

    def test_concurrent_holds_have_one_winner(self, ctx, scheduler):
        states = [presented_state(PRESENTED).model_copy(update={"call_id": f"call-{i}"}) for i in range(8)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda s: _hold(s, ctx, "2 pm"), states))

        winners = [r for r in results if r.outcome.success]
        assert len(winners) == 1
        assert len(scheduler.holds) == 1
        assert all(r.outcome.error.code == "SLOT_UNAVAILABLE" for r in results if not r.outcome.success)


class TestConfirmBooking:
    def test_books_held_slot(self, ctx, scheduler):
        result = _confirm(_held_state(ctx), ctx)

        assert result.outcome.success
        assert result.state.stage == Stage.BOOKED
        assert result.state.booking.appointment_id in scheduler.appointments
        assert result.state.booking.hold_id is None
        assert result.state.booking.candidate_slots == ()
        assert "Tuesday, March 3 at 9:00 AM" in result.outcome.message

    def test_booked_call_confirms_again_without_side_effects(self, ctx, scheduler):
        booked = _confirm(_held_state(ctx), ctx).state
        again = _confirm(booked, ctx)
        assert again.outcome.success
        assert again.state is booked
        assert scheduler.count("confirm_booking") == 1

    def test_expired_hold_is_released_and_represented(self, ctx, clock, scheduler):
        held = _held_state(ctx)
        clock.advance(minutes=11)
        result = _confirm(held, ctx)

        assert result.outcome.error.code == "HOLD_EXPIRED"
        assert result.state.stage == Stage.SLOTS_PRESENTED
        assert result.state.booking.hold_id is None
        assert result.state.booking.selected_slot is None
        assert result.state.booking.candidate_slots
        assert scheduler.count("confirm_booking") == 0

    def test_declined_confirmation(self, ctx):
        held = _held_state(ctx)
        result = _confirm(held, ctx, confirmed=False)
        assert result.outcome.error.code == "BOOKING_NOT_CONFIRMED"
        assert result.state is held

    def test_missing_confirmation_asks_again(self, ctx, scheduler):
        held = _held_state(ctx)
        result = confirm_booking(held, ConfirmBookingArgs(), ctx)
        assert result.outcome.error.code == "CONFIRMATION_REQUIRED"
        assert result.state is held
        assert scheduler.count("confirm_booking") == 0

    def test_requires_hold(self, ctx):
        assert _confirm(presented_state(PRESENTED), ctx).outcome.error.code == "HOLD_REQUIRED"

    def test_timeout_moves_to_confirmed_and_retry_books(self, ctx, scheduler):
        scheduler.failures["confirm_booking"] = AdapterTimeoutError("slow")
        first = _confirm(_held_state(ctx), ctx)

        assert first.outcome.error.code == "UPSTREAM_TIMEOUT"
        assert first.state.stage == Stage.CONFIRMED
        assert first.state.booking.hold_id == "hold-1"

        second = _confirm(first.state, ctx)
        assert second.outcome.success
        assert second.state.stage == Stage.BOOKED

    def test_rate_limit_leaves_state_untouched(self, ctx, scheduler):
        held = _held_state(ctx)
        scheduler.failures["confirm_booking"] = RateLimitError("slow down", status_code=429)
        result = _confirm(held, ctx)
        assert result.outcome.error.code == "RATE_LIMITED"
        assert result.state is held

    def test_vanished_hold_is_treated_as_expired(self, ctx, scheduler):
        held = _held_state(ctx)
        scheduler.failures["confirm_booking"] = NotFoundError("no such hold", status_code=404)
        result = _confirm(held, ctx)
        assert result.outcome.error.code == "HOLD_EXPIRED"
        assert result.state.stage == Stage.SLOTS_PRESENTED

    def test_technical_error_fails_the_booking(self, ctx, scheduler):
        held = _held_state(ctx)
        scheduler.failures["confirm_booking"] = SchedulingAPIError("boom", status_code=500)
        result = _confirm(held, ctx)

        assert result.outcome.error.code == "BOOKING_FAILED"
        assert result.state.stage == Stage.FAILED
        assert "boom" not in result.outcome.message
        assert _confirm(result.state, ctx).outcome.error.code == "BOOKING_FAILED"

    def test_re_search_failure_falls_back_to_remaining_candidates(self, ctx, scheduler, clock):
        held = _held_state(ctx)
        fallback = (local_slot(TUESDAY, 9), local_slot(WEDNESDAY, 10))
        held = held.model_copy(update={"booking": held.booking.model_copy(update={"candidate_slots": fallback})})
        clock.advance(minutes=30)
        scheduler.failures["search_slots"] = AdapterTimeoutError("slow")
        result = _confirm(held, ctx)

        assert result.outcome.error.code == "HOLD_EXPIRED"
        assert result.state.booking.candidate_slots == fallback

    def test_closed_after_booking_for_holds(self, ctx):
        state = state_at(Stage.BOOKED, booking=BookingUpdate(appointment_id="appt-1"))
        assert _hold(state, ctx, "9 am").outcome.error.code == "CALL_CLOSED"
