"""State merge engine.

``merge_state(current, update)`` returns a new :class:`ConversationState`
built from *current* plus the fields *update* actually supplies:

* scalars that are supplied overwrite the previous value,
* sub-records (``booking``, ``patient``) merge recursively through their own
  tagged merge function,
* collections (``candidate_slots``, ``collected_fields``) replace the previous
  collection wholesale; handlers always hand over complete replacements.

The functions never mutate their inputs and never raise for well-typed
arguments.
"""

from __future__ import annotations

import logging
from typing import Any

from booking_agent.models import (
    BookingRecord,
    BookingUpdate,
    ConversationState,
    PatientRecord,
    PatientUpdate,
    StateUpdate,
)

logger = logging.getLogger(__name__)

# Fields whose record type is not nullable: an explicit ``None`` in the
# update means "leave as is", except for collections where it means "empty".
_BOOKING_NON_NULLABLE = {"is_urgent"}
_BOOKING_COLLECTIONS = {"candidate_slots": tuple}
_PATIENT_NON_NULLABLE = {"status", "collected_fields"}


def _supplied(update: Any) -> dict[str, Any]:
    """Return ``{field: value}`` for the fields explicitly set on *update*."""
    return {name: getattr(update, name) for name in update.model_fields_set}


def merge_booking(current: BookingRecord, update: BookingUpdate | None) -> BookingRecord:
    if update is None:
        return current
    changes: dict[str, Any] = {}
    for name, value in _supplied(update).items():
        if value is None and name in _BOOKING_NON_NULLABLE:
            continue
        if name in _BOOKING_COLLECTIONS:
            value = _BOOKING_COLLECTIONS[name](value or ())
        if getattr(current, name) == value:
            continue
        changes[name] = value
    return current.model_copy(update=changes) if changes else current


def merge_patient(current: PatientRecord, update: PatientUpdate | None) -> PatientRecord:
    if update is None:
        return current
    changes: dict[str, Any] = {}
    for name, value in _supplied(update).items():
        if value is None and name in _PATIENT_NON_NULLABLE:
            continue
        if name == "external_patient_id" and current.external_patient_id is not None:
            if value != current.external_patient_id:
                logger.warning(
                    "Ignoring attempt to replace external patient id %s with %r",
                    current.external_patient_id, value,
                )
            continue
        if name == "collected_fields":
            value = dict(value)
        if getattr(current, name) == value:
            continue
        changes[name] = value
    return current.model_copy(update=changes) if changes else current


def merge_state(current: ConversationState, update: StateUpdate | None) -> ConversationState:
    """Produce the next state.  ``call_id`` and ``practice_id`` are never touched."""
    if update is None:
        return current
    changes: dict[str, Any] = {}
    for name, value in _supplied(update).items():
        if name == "booking":
            merged = merge_booking(current.booking, value)
            if merged is not current.booking:
                changes["booking"] = merged
        elif name == "patient":
            merged = merge_patient(current.patient, value)
            if merged is not current.patient:
                changes["patient"] = merged
        elif value is not None and getattr(current, name) != value:
            changes[name] = value
    return current.model_copy(update=changes) if changes else current
