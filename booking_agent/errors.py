"""Error taxonomy for the booking orchestrator.

Every failure a caller can experience is reported as an :class:`ErrorCategory`
plus a machine-readable code.  Each code owns one pre-authored, spoken
message; raw exception text is logged server-side and never reaches the
transcript.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import httpx

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    CONFIGURATION = "CONFIGURATION"  # practice setup missing, caller cannot fix it
    VALIDATION = "VALIDATION"        # malformed or ambiguous caller input
    NOT_FOUND = "NOT_FOUND"          # patient / appointment type / slot absent
    CONFLICT = "CONFLICT"            # hold expired or slot taken
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    TECHNICAL = "TECHNICAL"          # unexpected, reported but not retried


@dataclass(frozen=True)
class ErrorMessage:
    code: str
    category: ErrorCategory
    message: str


def _msg(code: str, category: ErrorCategory, message: str) -> tuple[str, ErrorMessage]:
    return code, ErrorMessage(code=code, category=category, message=message)


ERROR_MESSAGES: dict[str, ErrorMessage] = dict([
    # Configuration
    _msg("PRACTICE_NOT_CONFIGURED", ErrorCategory.CONFIGURATION,
         "The practice scheduling system isn't fully set up yet. "
         "Please contact the office directly to schedule your appointment."),
    _msg("NO_APPOINTMENT_TYPES", ErrorCategory.CONFIGURATION,
         "I'm not able to book appointments over the phone for this office just yet. "
         "Please contact the office directly and they'll be happy to help."),
    # Validation
    _msg("INVALID_ARGUMENTS", ErrorCategory.VALIDATION,
         "I received some unexpected information. Could you try rephrasing that?"),
    _msg("UNSUPPORTED_TOOL", ErrorCategory.VALIDATION,
         "I'm sorry, that's not something I can help with over the phone. "
         "Is there anything else I can do for you?"),
    _msg("APPOINTMENT_TYPE_NOT_MATCHED", ErrorCategory.VALIDATION,
         "I understand you're looking for an appointment, but I couldn't determine "
         "the exact type of visit you need. Could you tell me a little more about it?"),
    _msg("APPOINTMENT_TYPE_LOCKED", ErrorCategory.VALIDATION,
         "We've already started looking at times for your current visit. "
         "Let's finish that booking first, and then I can help with anything else."),
    _msg("APPOINTMENT_TYPE_REQUIRED", ErrorCategory.VALIDATION,
         "Before I look for times, could you tell me what the visit is for?"),
    _msg("INVALID_PATIENT_DETAIL", ErrorCategory.VALIDATION,
         "I'm sorry, I didn't quite catch that. Could you repeat it for me?"),
    _msg("PATIENT_DETAILS_UNCONFIRMED", ErrorCategory.VALIDATION,
         "No problem, let's get that corrected. Which detail should I change?"),
    _msg("PATIENT_REQUIRED", ErrorCategory.VALIDATION,
         "Before I reserve that time, I'll just need a few details to find your record."),
    _msg("INVALID_DATE", ErrorCategory.VALIDATION,
         "I didn't understand that date. Could you try saying it differently, "
         "like 'next Tuesday' or 'December 15th'?"),
    _msg("DATE_IN_PAST", ErrorCategory.VALIDATION,
         "That date has already passed. Could you choose a future date for your appointment?"),
    _msg("DATE_TOO_FAR", ErrorCategory.VALIDATION,
         "I can only check availability up to three months in advance. "
         "Please choose a date within that range."),
    _msg("SLOTS_NOT_PRESENTED", ErrorCategory.VALIDATION,
         "Let me first check which times are available for you."),
    _msg("SLOT_SELECTION_UNCLEAR", ErrorCategory.VALIDATION,
         "I want to make sure I get the right time for you. Which of these would you like?"),
    _msg("NO_SLOT_SELECTED", ErrorCategory.VALIDATION,
         "Which of the available times would you like me to reserve?"),
    _msg("SLOT_ALREADY_HELD", ErrorCategory.VALIDATION,
         "I'm already holding a time for you. Shall I go ahead and confirm it?"),
    _msg("HOLD_REQUIRED", ErrorCategory.VALIDATION,
         "Let me reserve a time for you before we confirm the booking."),
    _msg("BOOKING_NOT_CONFIRMED", ErrorCategory.VALIDATION,
         "No problem. Would you like me to look for a different time instead?"),
    _msg("CONFIRMATION_REQUIRED", ErrorCategory.VALIDATION,
         "Before I book it, can you confirm that this time works for you?"),
    _msg("CALL_CLOSED", ErrorCategory.VALIDATION,
         "This booking has already been completed. Is there anything else I can help with?"),
    # Not found
    _msg("NO_AVAILABILITY", ErrorCategory.NOT_FOUND,
         "I don't see any available appointments for that time. "
         "Would you like me to check a different day?"),
    _msg("RECORD_NOT_FOUND", ErrorCategory.NOT_FOUND,
         "I couldn't find that in our system. Could you double-check the details for me?"),
    # Conflict
    _msg("SLOT_UNAVAILABLE", ErrorCategory.CONFLICT,
         "I'm sorry, that time was just taken by someone else."),
    _msg("HOLD_EXPIRED", ErrorCategory.CONFLICT,
         "I'm sorry, the time I was holding for you has been released."),
    # Transient upstream
    _msg("RATE_LIMITED", ErrorCategory.RATE_LIMIT,
         "Our scheduling system is a little busy right now. Could you give me a moment and try again?"),
    _msg("UPSTREAM_TIMEOUT", ErrorCategory.TIMEOUT,
         "That request is taking longer than expected. Could we try that once more?"),
    # Technical
    _msg("SYSTEM_ERROR", ErrorCategory.TECHNICAL,
         "I'm experiencing a technical issue right now. "
         "Please try again in a moment or contact the office directly."),
    _msg("BOOKING_FAILED", ErrorCategory.TECHNICAL,
         "I'm sorry, but there was a system error and I couldn't finalize your booking. "
         "Our staff has been notified and will give you a call back shortly to confirm a time."),
])

# Default code per category, used when an exception is classified rather
# than reported with an explicit code.
CATEGORY_DEFAULT_CODES: dict[ErrorCategory, str] = {
    ErrorCategory.CONFIGURATION: "PRACTICE_NOT_CONFIGURED",
    ErrorCategory.VALIDATION: "INVALID_ARGUMENTS",
    ErrorCategory.NOT_FOUND: "RECORD_NOT_FOUND",
    ErrorCategory.CONFLICT: "SLOT_UNAVAILABLE",
    ErrorCategory.RATE_LIMIT: "RATE_LIMITED",
    ErrorCategory.TIMEOUT: "UPSTREAM_TIMEOUT",
    ErrorCategory.TECHNICAL: "SYSTEM_ERROR",
}


def get_error(code: str) -> ErrorMessage:
    """Look up a pre-authored message, falling back to ``SYSTEM_ERROR``."""
    entry = ERROR_MESSAGES.get(code)
    if entry is None:
        logger.warning("Unknown error code %r, using SYSTEM_ERROR", code)
        return ERROR_MESSAGES["SYSTEM_ERROR"]
    return entry


# ── Exceptions ───────────────────────────────────────────────────────


class SchedulingAPIError(Exception):
    """Raised when a call to the practice-management API fails."""

    category = ErrorCategory.TECHNICAL

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimitError(SchedulingAPIError):
    category = ErrorCategory.RATE_LIMIT


class NotFoundError(SchedulingAPIError):
    category = ErrorCategory.NOT_FOUND


class SlotConflictError(SchedulingAPIError):
    """The slot is held or booked by someone else."""

    category = ErrorCategory.CONFLICT


class AdapterTimeoutError(SchedulingAPIError):
    category = ErrorCategory.TIMEOUT


class ClassificationError(Exception):
    """The text-classification collaborator could not produce an answer."""


class ConfigurationError(Exception):
    """Practice setup is missing something the workflow needs."""


class StaleStateError(Exception):
    """A save was attempted from a state older than the stored one."""


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Map any exception raised below a handler to an :class:`ErrorCategory`."""
    if isinstance(exc, SchedulingAPIError):
        return exc.category
    if isinstance(exc, httpx.TimeoutException):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, ConfigurationError):
        return ErrorCategory.CONFIGURATION
    return ErrorCategory.TECHNICAL
