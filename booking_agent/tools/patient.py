"""``identify_or_create_patient``: collect the caller's details one at a time,
then find their record in the practice system or create one.

Details are collected in a fixed order and a partial answer is merged into
what was already collected, so the assistant can ask for one thing per turn:

    first name → last name → date of birth → phone → email

Creating a patient is the one write here that cannot be blindly retried.
When it times out the patient is marked ``CREATION_IN_PROGRESS``; because
every attempt looks the patient up before creating, the next attempt finds
a record that did get created instead of making a duplicate.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, field_validator

from booking_agent.errors import AdapterTimeoutError
from booking_agent.models import ConversationState, PatientStatus, PatientUpdate, Stage, StateUpdate
from booking_agent.state.merge import merge_state
from booking_agent.tools.base import HandlerContext, HandlerResult, fail, fail_from_exception, ok, unchanged
from booking_agent.workflow import TERMINAL_STAGES, advance, has_appointment_type

logger = logging.getLogger(__name__)

FIELD_ORDER = ("first_name", "last_name", "date_of_birth", "phone", "email")

_FIELD_LABELS = {
    "first_name": "first name",
    "last_name": "last name",
    "date_of_birth": "date of birth",
    "phone": "phone number",
    "email": "email address",
}

_PROMPTS = {
    "first_name": "Could I have your first name, please?",
    "last_name": "And your last name?",
    "date_of_birth": "What is your date of birth?",
    "phone": "What's the best phone number to reach you?",
    "email": "And finally, what's your email address?",
}

# RFC 5322-ish pattern, covers the vast majority of real-world emails.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)
_NAME_RE = re.compile(r"^[^\W\d_]+(?:[ '\-.][^\W\d_]+)*\.?$")
_DOB_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%B %d %Y", "%b %d %Y", "%d %B %Y", "%d %b %Y")


class IdentifyPatientArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    first_name: str | None = None
    last_name: str | None = None
    full_name: str | None = None
    date_of_birth: str | None = None
    phone: str | None = None
    email: str | None = None
    details_confirmed: bool | None = None

    @field_validator("first_name", "last_name", "full_name", "date_of_birth", "phone", "email")
    @classmethod
    def _blank_is_absent(cls, value: str | None) -> str | None:
        return value or None

    def submitted(self) -> dict[str, str]:
        """Supplied detail fields, with ``full_name`` split into first/last."""
        values: dict[str, str] = {}
        if self.full_name:
            first, _, last = self.full_name.partition(" ")
            values["first_name"] = first
            if last.strip():
                values["last_name"] = last.strip()
        for name in FIELD_ORDER:
            value = getattr(self, name)
            if value:
                values[name] = value
        return values


# ── Normalisation ───────────────────────────────────────────────────


def normalise_name(value: str) -> str | None:
    value = " ".join(value.split())
    if not value or len(value) > 50 or not _NAME_RE.match(value):
        return None
    if value.islower() or value.isupper():
        value = value.title()
    return value


def normalise_date_of_birth(value: str, *, today: date | None = None) -> str | None:
    """Return ``YYYY-MM-DD`` or ``None`` for anything unparseable or implausible."""
    cleaned = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", value.strip(), flags=re.IGNORECASE)
    cleaned = " ".join(cleaned.replace(",", " ").split())
    today = today or date.today()
    for fmt in _DOB_FORMATS:
        try:
            parsed = datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
        if parsed.year < 1900 or parsed >= today:
            return None
        return parsed.isoformat()
    return None


def normalise_phone(value: str) -> str | None:
    digits = re.sub(r"\D", "", value)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits if len(digits) == 10 else None


def normalise_email(value: str) -> str | None:
    email = value.strip().lower()
    email = re.sub(r"\s+at\s+", "@", email)
    email = re.sub(r"\s+dot\s+", ".", email)
    email = email.replace(" ", "")
    return email if _EMAIL_RE.match(email) else None


_NORMALISERS: dict[str, Callable[[str], str | None]] = {
    "first_name": normalise_name,
    "last_name": normalise_name,
    "phone": normalise_phone,
    "email": normalise_email,
}


def next_missing_field(collected: dict[str, str]) -> str | None:
    for name in FIELD_ORDER:
        if not collected.get(name):
            return name
    return None


def read_back(collected: dict[str, str]) -> str:
    phone = collected["phone"]
    return (
        f"I have {collected['first_name']} {collected['last_name']}, "
        f"born {collected['date_of_birth']}, phone {phone[:3]}-{phone[3:6]}-{phone[6:]}, "
        f"email {collected['email']}."
    )


# ── Handler ─────────────────────────────────────────────────────────


def identify_or_create_patient(
    state: ConversationState, args: IdentifyPatientArgs, ctx: HandlerContext,
) -> HandlerResult:
    if state.stage in TERMINAL_STAGES:
        return unchanged(state, fail("CALL_CLOSED"))

    patient = state.patient
    if patient.external_patient_id is not None:
        name = patient.collected_fields.get("first_name", "")
        return unchanged(
            state,
            ok(f"I already have your file{', ' + name if name else ''}.", patient_id=patient.external_patient_id),
        )

    collected = dict(patient.collected_fields)
    invalid: str | None = None
    for name, raw in args.submitted().items():
        if name == "date_of_birth":
            normalised = normalise_date_of_birth(raw, today=ctx.today())
        else:
            normalised = _NORMALISERS[name](raw)
        if normalised is None:
            logger.info("Call %s: rejected %s value", state.call_id, name)
            invalid = invalid or name
            continue
        collected[name] = normalised

    working = merge_state(state, StateUpdate(patient=PatientUpdate(collected_fields=collected)))

    if invalid is not None:
        return HandlerResult(
            outcome=fail(
                "INVALID_PATIENT_DETAIL",
                extra=f"What is your {_FIELD_LABELS[invalid]}?",
                field=invalid,
            ),
            state=working,
        )

    missing = next_missing_field(collected)
    if missing is not None:
        return HandlerResult(outcome=ok(_PROMPTS[missing], next_field=missing), state=working)

    if args.details_confirmed is False:
        return HandlerResult(
            outcome=fail("PATIENT_DETAILS_UNCONFIRMED", extra=read_back(collected)),
            state=working,
        )

    practice = ctx.practice
    try:
        patient_id = ctx.scheduler.find_patient(
            practice,
            first_name=collected["first_name"],
            last_name=collected["last_name"],
            date_of_birth=collected["date_of_birth"],
        )
    except Exception as exc:
        return HandlerResult(outcome=fail_from_exception(exc, operation="find_patient"), state=working)

    is_new = patient_id is None
    if is_new:
        if working.patient.status == PatientStatus.CREATION_IN_PROGRESS:
            logger.info("Call %s: previous patient creation did not land; creating again", state.call_id)
        try:
            patient_id = ctx.scheduler.create_patient(
                practice,
                first_name=collected["first_name"],
                last_name=collected["last_name"],
                date_of_birth=collected["date_of_birth"],
                phone=collected["phone"],
                email=collected["email"],
            )
        except AdapterTimeoutError as exc:
            logger.warning("Call %s: patient creation timed out: %s", state.call_id, exc)
            pending = merge_state(
                working, StateUpdate(patient=PatientUpdate(status=PatientStatus.CREATION_IN_PROGRESS)),
            )
            return HandlerResult(outcome=fail("UPSTREAM_TIMEOUT"), state=pending)
        except Exception as exc:
            return HandlerResult(outcome=fail_from_exception(exc, operation="create_patient"), state=working)

    new_state = merge_state(
        working,
        StateUpdate(
            stage=advance(working.stage, Stage.PATIENT_IDENTIFIED),
            patient=PatientUpdate(
                status=PatientStatus.IDENTIFIED,
                external_patient_id=patient_id,
                is_new_patient=is_new,
            ),
        ),
    )
    logger.info("Call %s: patient %s %s", state.call_id, patient_id, "created" if is_new else "found")

    first_name = collected["first_name"]
    opener = (
        f"Thanks, {first_name}. I've created your file." if is_new
        else f"Thanks, {first_name}. I found your file."
    )
    if not has_appointment_type(new_state):
        follow = "What can we help you with today?"
    elif new_state.booking.selected_slot is not None:
        follow = "Shall I reserve that time for you?"
    elif new_state.stage == Stage.SLOTS_PRESENTED:
        follow = "Which of those times would you like?"
    else:
        follow = "What day works best for you?"
    return HandlerResult(
        outcome=ok(f"{opener} {follow}", patient_id=patient_id, is_new_patient=is_new),
        state=new_state,
    )
