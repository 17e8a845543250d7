"""Conversation state: merge engine and persistence backends."""

from booking_agent.state.merge import merge_booking, merge_patient, merge_state
from booking_agent.state.store import (
    InMemoryStateStore,
    SqlStateStore,
    StateStore,
    ToolCallRecord,
)

__all__ = [
    "InMemoryStateStore",
    "SqlStateStore",
    "StateStore",
    "ToolCallRecord",
    "merge_booking",
    "merge_patient",
    "merge_state",
]
