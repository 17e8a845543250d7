"""Conversation state persistence.

Two interchangeable backends implement :class:`StateStore`:

* :class:`InMemoryStateStore` keeps everything in process (tests, CLI).
* :class:`SqlStateStore` persists to any SQLAlchemy database (SQLite by
  default) so state survives restarts and is retained after the call for
  audit and debugging.

Both also keep the tool-call log: one row per processed tool call, which
the dispatcher uses to replay the response of a retried ``tool_call_id``
instead of repeating its side effects.

Persistence is last-write-wins keyed by call id.  Each state carries a
``version`` token; when ``strict_sequencing`` is on, saving a state whose
base version is older than the stored one raises :class:`StaleStateError`.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from booking_agent.errors import StaleStateError
from booking_agent.models import ConversationState, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCallRecord:
    tool_call_id: str
    call_id: str
    tool_name: str
    success: bool
    response: dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)


class StateStore(Protocol):
    def load(self, call_id: str) -> ConversationState | None: ...

    def save(self, state: ConversationState) -> None: ...

    def get_tool_result(self, call_id: str, tool_call_id: str) -> ToolCallRecord | None: ...

    def record_tool_call(self, record: ToolCallRecord) -> None: ...

    def list_tool_calls(self, call_id: str) -> list[ToolCallRecord]: ...


def _check_sequence(stored_version: int | None, state: ConversationState, strict: bool) -> None:
    """``state.version`` is the version it will be saved as (stored + 1)."""
    if stored_version is None or state.version > stored_version:
        return
    if strict:
        raise StaleStateError(
            f"State for call {state.call_id} is stale "
            f"(saving v{state.version}, stored v{stored_version})"
        )
    logger.warning(
        "Concurrent turn detected for call %s (saving v%d over stored v%d); last write wins",
        state.call_id, state.version, stored_version,
    )


# ── In-memory backend ───────────────────────────────────────────────


class InMemoryStateStore:
    """Thread-safe dictionary store."""

    def __init__(self, *, strict_sequencing: bool = False) -> None:
        self._strict = strict_sequencing
        self._states: dict[str, ConversationState] = {}
        self._tool_calls: dict[tuple[str, str], ToolCallRecord] = {}
        self._lock = threading.Lock()

    def load(self, call_id: str) -> ConversationState | None:
        with self._lock:
            return self._states.get(call_id)

    def save(self, state: ConversationState) -> None:
        with self._lock:
            stored = self._states.get(state.call_id)
            _check_sequence(stored.version if stored else None, state, self._strict)
            self._states[state.call_id] = state

    def get_tool_result(self, call_id: str, tool_call_id: str) -> ToolCallRecord | None:
        with self._lock:
            return self._tool_calls.get((call_id, tool_call_id))

    def record_tool_call(self, record: ToolCallRecord) -> None:
        with self._lock:
            existing = self._tool_calls.get((record.call_id, record.tool_call_id))
            # A successful response is never replaced by a later failure.
            if existing is not None and existing.success and not record.success:
                return
            self._tool_calls[(record.call_id, record.tool_call_id)] = record

    def list_tool_calls(self, call_id: str) -> list[ToolCallRecord]:
        with self._lock:
            records = [r for (cid, _), r in self._tool_calls.items() if cid == call_id]
        return sorted(records, key=lambda r: r.created_at)


# ── SQL backend ─────────────────────────────────────────────────────


class Base(DeclarativeBase):
    pass


class ConversationStateRow(Base):
    __tablename__ = "conversation_states"

    call_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    practice_id: Mapped[str] = mapped_column(String(100), index=True)
    stage: Mapped[str] = mapped_column(String(40))
    version: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow,
    )


class ToolCallLogRow(Base):
    __tablename__ = "tool_call_log"

    call_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    tool_call_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    tool_name: Mapped[str] = mapped_column(String(100))
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    response: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


def _to_record(row: ToolCallLogRow) -> ToolCallRecord:
    return ToolCallRecord(
        tool_call_id=row.tool_call_id,
        call_id=row.call_id,
        tool_name=row.tool_name,
        success=row.success,
        response=json.loads(row.response),
        created_at=row.created_at,
    )


class SqlStateStore:
    """SQLAlchemy-backed store.  Tables are created on construction."""

    def __init__(self, url_or_engine: str | Engine, *, strict_sequencing: bool = False) -> None:
        if isinstance(url_or_engine, str):
            connect_args = {"check_same_thread": False} if url_or_engine.startswith("sqlite") else {}
            self._engine = create_engine(url_or_engine, connect_args=connect_args)
        else:
            self._engine = url_or_engine
        self._strict = strict_sequencing
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        Base.metadata.create_all(self._engine)

    def load(self, call_id: str) -> ConversationState | None:
        with self._sessions() as session:
            row = session.get(ConversationStateRow, call_id)
            if row is None:
                return None
            return ConversationState.model_validate_json(row.payload)

    def save(self, state: ConversationState) -> None:
        with self._sessions.begin() as session:
            row = session.get(ConversationStateRow, state.call_id)
            _check_sequence(row.version if row else None, state, self._strict)
            if row is None:
                row = ConversationStateRow(
                    call_id=state.call_id,
                    practice_id=state.practice_id,
                    created_at=state.created_at,
                )
                session.add(row)
            row.stage = state.stage.value
            row.version = state.version
            row.payload = state.model_dump_json()
            row.updated_at = state.updated_at
        logger.debug("Persisted state for call %s (stage=%s, v%d)", state.call_id, state.stage.value, state.version)

    def get_tool_result(self, call_id: str, tool_call_id: str) -> ToolCallRecord | None:
        with self._sessions() as session:
            row = session.get(ToolCallLogRow, (call_id, tool_call_id))
            return _to_record(row) if row else None

    def record_tool_call(self, record: ToolCallRecord) -> None:
        with self._sessions.begin() as session:
            row = session.get(ToolCallLogRow, (record.call_id, record.tool_call_id))
            if row is not None and row.success and not record.success:
                return
            if row is None:
                row = ToolCallLogRow(call_id=record.call_id, tool_call_id=record.tool_call_id)
                session.add(row)
            row.tool_name = record.tool_name
            row.success = record.success
            row.response = json.dumps(record.response, default=str)
            row.created_at = record.created_at

    def list_tool_calls(self, call_id: str) -> list[ToolCallRecord]:
        with self._sessions() as session:
            rows = session.scalars(
                select(ToolCallLogRow)
                .where(ToolCallLogRow.call_id == call_id)
                .order_by(ToolCallLogRow.created_at)
            ).all()
            return [_to_record(row) for row in rows]
