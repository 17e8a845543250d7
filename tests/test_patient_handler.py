"""Tests for identify_or_create_patient and its detail normalisers."""

from __future__ import annotations

from datetime import date

import pytest

from booking_agent.errors import AdapterTimeoutError
from booking_agent.models import BookingUpdate, PatientStatus, PatientUpdate, Stage
from booking_agent.tools.patient import (
    IdentifyPatientArgs,
    identify_or_create_patient,
    next_missing_field,
    normalise_date_of_birth,
    normalise_email,
    normalise_name,
    normalise_phone,
)
from tests.fakes import identified_patient, state_at

FULL_DETAILS = dict(
    full_name="ada lovelace",
    date_of_birth="April 12th, 1985",
    phone="(313) 555-0100",
    email="ada at example dot com",
)


def _run(state, ctx, **kwargs):
    return identify_or_create_patient(state, IdentifyPatientArgs(**kwargs), ctx)


# ── Normalisers ──────────────────────────────────────────────────────


class TestNormaliseEmail:
    @pytest.mark.parametrize(
        "email",
        [
            "alice@example.com",
            "bob.jones@clinic.co.uk",
            "jane+tag@gmail.com",
            "user@sub.domain.org",
            "digits123@test456.io",
        ],
    )
    def test_accepts_valid_emails(self, email: str):
        assert normalise_email(email) == email

    def test_lowercases_and_reads_spoken_form(self):
        assert normalise_email("UPPER@CASE.COM") == "upper@case.com"
        assert normalise_email("jane dot doe at gmail dot com") == "jane.doe@gmail.com"

    @pytest.mark.parametrize(
        "email",
        ["", "   ", "not-an-email", "missing@", "@no-local.com", "double@@at.com", "no-tld@localhost",
         "user@.leading-dot.com"],
    )
    def test_rejects_invalid_emails(self, email: str):
        assert normalise_email(email) is None


class TestOtherNormalisers:
    @pytest.mark.parametrize(
        "raw, expected",
        [("ada", "Ada"), ("O'Brien", "O'Brien"), ("MARY-JANE", "Mary-Jane"), ("R2D2", None), ("", None)],
    )
    def test_names(self, raw, expected):
        assert normalise_name(raw) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("1985-04-12", "1985-04-12"),
            ("04/12/1985", "1985-04-12"),
            ("April 12th, 1985", "1985-04-12"),
            ("12 April 1985", "1985-04-12"),
            ("1850-01-01", None),
            ("2030-01-01", None),
            ("last spring", None),
        ],
    )
    def test_dates_of_birth(self, raw, expected):
        assert normalise_date_of_birth(raw, today=date(2026, 3, 2)) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [("313-555-0100", "3135550100"), ("+1 (313) 555 0100", "3135550100"), ("555-0100", None)],
    )
    def test_phones(self, raw, expected):
        assert normalise_phone(raw) == expected

    def test_next_missing_field_follows_fixed_order(self):
        assert next_missing_field({}) == "first_name"
        assert next_missing_field({"first_name": "Ada", "date_of_birth": "1985-04-12"}) == "last_name"
        assert next_missing_field(
            {"first_name": "A", "last_name": "B", "date_of_birth": "x", "phone": "y", "email": "z"}
        ) is None


# ── Handler ──────────────────────────────────────────────────────────


class TestIncrementalCollection:
    def test_first_name_only_asks_for_last_name(self, ctx, scheduler):
        result = _run(state_at(), ctx, first_name="ada")

        assert result.outcome.success
        assert result.outcome.data["next_field"] == "last_name"
        assert dict(result.state.patient.collected_fields) == {"first_name": "Ada"}
        assert result.state.patient.status == PatientStatus.AWAITING_IDENTIFIER
        assert result.state.stage == Stage.GREETING
        assert scheduler.calls == []

    def test_partial_answers_accumulate_across_turns(self, ctx):
        state = _run(state_at(), ctx, first_name="Ada").state
        state = _run(state, ctx, last_name="Lovelace").state
        result = _run(state, ctx, date_of_birth="1985-04-12")

        assert result.outcome.data["next_field"] == "phone"
        assert result.state.patient.collected_fields["last_name"] == "Lovelace"

    def test_invalid_email_is_not_stored(self, ctx):
        state = _run(state_at(), ctx, full_name="Ada Lovelace", date_of_birth="1985-04-12", phone="3135550100").state
        result = _run(state, ctx, email="ada at example")

        assert result.outcome.error.code == "INVALID_PATIENT_DETAIL"
        assert result.outcome.data["field"] == "email"
        assert "email address" in result.outcome.message
        assert "email" not in result.state.patient.collected_fields

    def test_valid_fields_are_kept_when_another_is_invalid(self, ctx):
        result = _run(state_at(), ctx, first_name="Ada", date_of_birth="next year")
        assert result.outcome.data["field"] == "date_of_birth"
        assert result.state.patient.collected_fields["first_name"] == "Ada"

    def test_unconfirmed_details_are_read_back(self, ctx, scheduler):
        result = _run(state_at(), ctx, details_confirmed=False, **FULL_DETAILS)

        assert result.outcome.error.code == "PATIENT_DETAILS_UNCONFIRMED"
        assert "Ada Lovelace" in result.outcome.message
        assert "313-555-0100" in result.outcome.message
        assert scheduler.count("create_patient") == 0


class TestLookupAndCreate:
    def test_creates_new_patient(self, ctx, scheduler):
        result = _run(state_at(), ctx, **FULL_DETAILS)

        assert result.outcome.success
        patient = result.state.patient
        assert patient.status == PatientStatus.IDENTIFIED
        assert patient.external_patient_id == "patient-1"
        assert patient.is_new_patient is True
        assert result.state.stage == Stage.PATIENT_IDENTIFIED
        assert scheduler.patients[("ada", "lovelace", "1985-04-12")] == "patient-1"
        assert "created your file" in result.outcome.message

    def test_finds_existing_patient_without_creating(self, ctx, scheduler):
        scheduler.patients[("ada", "lovelace", "1985-04-12")] = "pt-9"
        result = _run(state_at(), ctx, **FULL_DETAILS)

        assert result.state.patient.external_patient_id == "pt-9"
        assert result.state.patient.is_new_patient is False
        assert scheduler.count("create_patient") == 0

    def test_stage_does_not_move_back_once_slots_presented(self, ctx):
        state = state_at(Stage.SLOTS_PRESENTED, booking=BookingUpdate(appointment_type_id="100"))
        result = _run(state, ctx, **FULL_DETAILS)
        assert result.state.stage == Stage.SLOTS_PRESENTED
        assert "Which of those times" in result.outcome.message

    def test_creation_timeout_marks_in_progress_and_retry_does_not_duplicate(self, ctx, scheduler):
        scheduler.failures["create_patient"] = AdapterTimeoutError("timed out")
        first = _run(state_at(), ctx, **FULL_DETAILS)

        assert first.outcome.error.code == "UPSTREAM_TIMEOUT"
        assert first.state.patient.status == PatientStatus.CREATION_IN_PROGRESS
        assert first.state.patient.external_patient_id is None

        # The create landed upstream even though the response was lost.
        scheduler.patients[("ada", "lovelace", "1985-04-12")] = "pt-late"
        second = _run(first.state, ctx)

        assert second.state.patient.external_patient_id == "pt-late"
        assert second.state.patient.status == PatientStatus.IDENTIFIED
        assert scheduler.count("create_patient") == 1

    def test_already_identified_is_a_no_op(self, ctx, scheduler):
        state = state_at(Stage.PATIENT_IDENTIFIED, patient=identified_patient("pt-1"))
        result = _run(state, ctx, first_name="Someone")

        assert result.outcome.success
        assert result.state is state
        assert scheduler.calls == []

    def test_lookup_failure_keeps_collected_details(self, ctx, scheduler):
        scheduler.failures["find_patient"] = AdapterTimeoutError("timed out")
        result = _run(state_at(), ctx, **FULL_DETAILS)

        assert result.outcome.error.code == "UPSTREAM_TIMEOUT"
        assert result.state.patient.collected_fields["email"] == "ada@example.com"
        assert result.state.patient.status == PatientStatus.AWAITING_IDENTIFIER

    def test_closed_call(self, ctx):
        state = state_at(Stage.FAILED, patient=PatientUpdate(collected_fields={}))
        assert _run(state, ctx, first_name="Ada").outcome.error.code == "CALL_CLOSED"
