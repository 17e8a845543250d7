"""Slot presentation and verbal slot selection.

Slots are presented to the caller in the practice's local time
("Tuesday, March 3 at 2:00 PM").  When the caller answers, their words are
matched back against those display times.  The matcher narrows the
presented set by weekday, date, clock time, time of day and ordinal position and
only reports a selection when exactly one slot survives; it never picks the
earliest of several candidates on its own.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, time
from itertools import groupby
from zoneinfo import ZoneInfo

from booking_agent.models import Slot

# Local-time windows, inclusive start / exclusive end.  "evening" overlaps
# the end of "afternoon" so a caller asking for after-work times still sees
# 4 PM openings.
TIME_BUCKETS: dict[str, tuple[time, time]] = {
    "early": (time(5, 0), time(8, 30)),
    "morning": (time(5, 0), time(12, 0)),
    "midday": (time(10, 0), time(15, 0)),
    "afternoon": (time(12, 0), time(17, 0)),
    "evening": (time(15, 30), time(20, 0)),
    "late": (time(17, 0), time(22, 0)),
}

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_HOUR_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}
_MINUTE_WORDS = {"fifteen": "15", "thirty": "30", "forty five": "45", "o'clock": "00", "oclock": "00"}

_HOUR_WORD_RE = "|".join(_HOUR_WORDS)
_SPOKEN_TIME_RE = re.compile(rf"\b({_HOUR_WORD_RE})\s+(fifteen|thirty|forty five|o'?clock)\b")
_SPOKEN_HOUR_RE = re.compile(rf"\b({_HOUR_WORD_RE})\s*(am|pm)\b")

_CLOCK_RE = re.compile(r"\b(\d{1,2})(?::|\s)(\d{2})\s*(am|pm)?\b")
_HOUR_MERIDIEM_RE = re.compile(r"\b(\d{1,2})\s*(am|pm)\b")
_OCLOCK_RE = re.compile(r"\b(\d{1,2})\s*o'?clock\b")
_AT_HOUR_RE = re.compile(r"\bat (\d{1,2})\b")

_ORDINALS: dict[str, int] = {
    "first": 0, "1st": 0, "earliest": 0,
    "second": 1, "2nd": 1,
    "third": 2, "3rd": 2,
    "fourth": 3, "4th": 3,
    "last": -1, "latest": -1,
}
_ORDINAL_RE = re.compile(r"\b(" + "|".join(_ORDINALS) + r")\b")
_OPTION_RE = re.compile(r"\b(?:option|number)\s+(\d)\b")

# Day-of-month phrases ("March 3rd", "the 3rd of March", "Tuesday the 3rd").
# Matched against the slot's date and removed before ordinals are read, so
# "3rd" inside a date never becomes a list position.
_MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)
_DAY_WORDS = {"first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5}
_MONTH_ALT = "|".join(_MONTHS)
_DAY_ALT = r"\d{1,2}(?:st|nd|rd|th)?|" + "|".join(_DAY_WORDS)
_NOT_A_TIME = r"(?!\s*(?:am|pm|:\d|o'?clock))(?!\s+(?:one|option|slot)\b)"
_DAY_OF_MONTH_RES = (
    re.compile(rf"\b(?P<month>{_MONTH_ALT}),?\s+(?:the\s+)?(?P<day>{_DAY_ALT})\b{_NOT_A_TIME}"),
    re.compile(rf"\b(?:the\s+)?(?P<day>{_DAY_ALT})\s+of\s+(?P<month>{_MONTH_ALT})\b"),
    re.compile(
        rf"\b(?:{'|'.join(_WEEKDAYS)}),?\s+the\s+"
        rf"(?P<day>\d{{1,2}}(?:st|nd|rd|th)|{'|'.join(_DAY_WORDS)})\b{_NOT_A_TIME}"
    ),
)


# ── Formatting ──────────────────────────────────────────────────────


def to_local(dt: datetime, timezone: str) -> datetime:
    return dt.astimezone(ZoneInfo(timezone))


def format_clock(dt: datetime) -> str:
    """``14:05`` → ``2:05 PM``."""
    hour = dt.hour % 12 or 12
    return f"{hour}:{dt.minute:02d} {'AM' if dt.hour < 12 else 'PM'}"


def format_day(dt: datetime) -> str:
    return f"{dt.strftime('%A, %B')} {dt.day}"


def format_slot(slot: Slot, timezone: str) -> str:
    local = to_local(slot.start, timezone)
    return f"{format_day(local)} at {format_clock(local)}"


def _join_or(items: Sequence[str]) -> str:
    if len(items) <= 1:
        return "".join(items)
    return f"{', '.join(items[:-1])} or {items[-1]}"


def describe_options(slots: Sequence[Slot], timezone: str) -> str:
    """Spoken list grouped by day: ``On Tuesday, March 3 I have 9:00 AM or 2:00 PM.``"""
    sentences = []
    local = [to_local(slot.start, timezone) for slot in slots]
    for day, group in groupby(local, key=format_day):
        times = [format_clock(dt) for dt in group]
        sentences.append(f"On {day} I have {_join_or(times)}.")
    return " ".join(sentences)


def in_bucket(slot: Slot, bucket: str, timezone: str) -> bool:
    start, end = TIME_BUCKETS[bucket]
    local_time = to_local(slot.start, timezone).time()
    return start <= local_time < end


def filter_by_bucket(slots: Sequence[Slot], bucket: str | None, timezone: str) -> list[Slot]:
    if not bucket:
        return list(slots)
    return [slot for slot in slots if in_bucket(slot, bucket, timezone)]


# ── Verbal selection ────────────────────────────────────────────────


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of matching the caller's words against presented slots.

    ``selected`` is set only for a unique match.  ``options`` holds the
    narrowed set to re-present when the answer was ambiguous, or is empty
    when nothing matched.
    """

    selected: Slot | None
    options: tuple[Slot, ...] = field(default_factory=tuple)
    understood: bool = True

    @property
    def is_ambiguous(self) -> bool:
        return self.selected is None and len(self.options) > 1


@dataclass(frozen=True)
class _ClockTime:
    hour: int
    minute: int | None
    meridiem: str | None


def _normalise(text: str) -> str:
    text = text.lower().replace("-", " ").replace("a.m.", "am").replace("p.m.", "pm")
    text = re.sub(r"\b(?:noon|midday)\b", "12:00 pm", text)
    text = re.sub(r"\s+", " ", text).strip()
    text = _SPOKEN_TIME_RE.sub(lambda m: f"{_HOUR_WORDS[m.group(1)]}:{_MINUTE_WORDS[m.group(2)]}", text)
    return _SPOKEN_HOUR_RE.sub(lambda m: f"{_HOUR_WORDS[m.group(1)]} {m.group(2)}", text)


def _parse_clock(text: str) -> _ClockTime | None:
    if m := _CLOCK_RE.search(text):
        return _ClockTime(int(m.group(1)), int(m.group(2)), m.group(3))
    if m := _HOUR_MERIDIEM_RE.search(text):
        return _ClockTime(int(m.group(1)), None, m.group(2))
    if m := _OCLOCK_RE.search(text):
        return _ClockTime(int(m.group(1)), 0, None)
    if m := _AT_HOUR_RE.search(text):
        return _ClockTime(int(m.group(1)), None, None)
    return None


@dataclass(frozen=True)
class _DayOfMonth:
    day: int
    month: int | None

    def matches(self, local: datetime) -> bool:
        return local.day == self.day and (self.month is None or local.month == self.month)


def _extract_day_of_month(text: str) -> tuple[_DayOfMonth | None, str]:
    """Pull a day-of-month phrase out of *text*; return it and the remaining text."""
    for pattern in _DAY_OF_MONTH_RES:
        m = pattern.search(text)
        if not m:
            continue
        raw_day = m.group("day")
        day = _DAY_WORDS.get(raw_day) or int(re.sub(r"\D", "", raw_day))
        if not 1 <= day <= 31:
            continue
        month_name = m.groupdict().get("month")
        month = _MONTHS.index(month_name) + 1 if month_name else None
        return _DayOfMonth(day, month), f"{text[:m.start()]} {text[m.end():]}"
    return None, text


def _matches_clock(local: datetime, clock: _ClockTime) -> bool:
    if clock.hour > 12:
        if local.hour != clock.hour:
            return False
    else:
        if (local.hour % 12 or 12) != clock.hour:
            return False
        if clock.meridiem and ("am" if local.hour < 12 else "pm") != clock.meridiem:
            return False
    return clock.minute is None or local.minute == clock.minute


def match_selection(user_selection: str, slots: Sequence[Slot], timezone: str) -> SelectionResult:
    """Match the caller's description against *slots* (already chronological)."""
    text = _normalise(user_selection)
    pool = list(slots)
    understood = False

    days = [day for day in _WEEKDAYS if re.search(rf"\b{day}\b", text)]
    if days:
        understood = True
        pool = [s for s in pool if to_local(s.start, timezone).strftime("%A").lower() in days]

    day_of_month, text = _extract_day_of_month(text)
    if day_of_month is not None:
        understood = True
        pool = [s for s in pool if day_of_month.matches(to_local(s.start, timezone))]

    clock = _parse_clock(text)
    if clock is not None:
        understood = True
        matching = [s for s in pool if _matches_clock(to_local(s.start, timezone), clock)]
        if clock.minute is None:
            # "2 PM" names the top of the hour exactly; fall back to anything
            # within that hour only when no slot starts on the hour.
            on_the_hour = [s for s in matching if to_local(s.start, timezone).minute == 0]
            matching = on_the_hour or matching
        pool = matching
    else:
        buckets = [name for name in ("morning", "afternoon", "evening") if name in text]
        if buckets:
            understood = True
            pool = [s for s in pool if any(in_bucket(s, b, timezone) for b in buckets)]

    position = None
    if m := _OPTION_RE.search(text):
        position = int(m.group(1)) - 1
    elif m := _ORDINAL_RE.search(text):
        position = _ORDINALS[m.group(1)]
    if position is not None and pool:
        understood = True
        if -len(pool) <= position < len(pool):
            pool = [pool[position]]
        else:
            pool = []

    if not understood:
        return SelectionResult(selected=None, options=tuple(slots), understood=False)
    if len(pool) == 1:
        return SelectionResult(selected=pool[0], options=(pool[0],))
    return SelectionResult(selected=None, options=tuple(pool))
