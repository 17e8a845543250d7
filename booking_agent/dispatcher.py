"""Tool call dispatcher: the single entry point for one voice turn.

For each inbound tool call the dispatcher

1. replays the stored response when the same ``tool_call_id`` already
   succeeded for this call (the voice platform retries on its own timeouts),
2. loads the call's state, or starts a fresh one at GREETING,
3. resolves the practice and the tool,
4. validates the arguments against the tool's model,
5. runs the handler and saves the state it returns (only if it changed),
6. logs the outcome in the tool-call log and in metrics.

It always answers with exactly one :class:`ToolCallResponse`; no exception
escapes :meth:`ToolCallDispatcher.dispatch`.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from booking_agent.errors import get_error
from booking_agent.models import ConversationState, Stage, StateUpdate, utcnow
from booking_agent.practices import PracticeConfig, PracticeDirectory
from booking_agent.services.classifier import IntentClassifier
from booking_agent.services.metrics import MetricsClient
from booking_agent.services.nexhealth_client import SchedulingAdapter
from booking_agent.state.merge import merge_state
from booking_agent.state.store import StateStore, ToolCallRecord
from booking_agent.tools.base import HandlerContext, HandlerResult, ToolKind, WorkflowSettings
from booking_agent.tools.registry import TOOL_REGISTRY

logger = logging.getLogger(__name__)

REPLAY_OUTCOME = "replay"


# ── Event and envelope ──────────────────────────────────────────────


class ToolCallEvent(BaseModel):
    """One tool call extracted from the voice platform's webhook."""

    call_id: str = Field(min_length=1)
    tool_call_id: str = Field(min_length=1)
    tool_name: str | None = None
    arguments: dict[str, Any] | str | None = None
    practice_id: str | None = None
    assistant_id: str | None = None


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AssistantMessage(_Camel):
    type: str
    role: str = "assistant"
    content: str


class FollowUpCall(_Camel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolCallResponse(_Camel):
    """Envelope returned to the voice platform for one tool call."""

    tool_call_id: str
    result: dict[str, Any]
    error: str | None = None
    message: AssistantMessage
    follow_up_tool_call: FollowUpCall | None = None

    @property
    def success(self) -> bool:
        return bool(self.result.get("success"))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def decode_arguments(raw: dict[str, Any] | str | None) -> dict[str, Any]:
    """Arguments arrive as an object or as JSON text."""
    if raw is None:
        return {}
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        decoded = json.loads(raw)
        if not isinstance(decoded, dict):
            raise ValueError("tool arguments must be a JSON object")
        return decoded
    return dict(raw)


def error_response(tool_call_id: str, code: str, *, stage: Stage | None = None) -> ToolCallResponse:
    entry = get_error(code)
    result: dict[str, Any] = {"success": False, "category": entry.category.value, "code": entry.code}
    if stage is not None:
        result["stage"] = stage.value
    return ToolCallResponse(
        tool_call_id=tool_call_id,
        result=result,
        error=entry.code,
        message=AssistantMessage(type="request-failed", content=entry.message),
    )


def build_response(tool_call_id: str, handled: HandlerResult) -> ToolCallResponse:
    outcome = handled.outcome
    result: dict[str, Any] = {"success": outcome.success, "stage": handled.state.stage.value, **outcome.data}
    if outcome.error is not None:
        result["category"] = outcome.error.category.value
        result["code"] = outcome.error.code
    follow_up = None
    if handled.follow_up is not None:
        follow_up = FollowUpCall(name=handled.follow_up.name, arguments=handled.follow_up.arguments)
    return ToolCallResponse(
        tool_call_id=tool_call_id,
        result=result,
        error=outcome.error.code if outcome.error else None,
        message=AssistantMessage(
            type="request-complete" if outcome.success else "request-failed",
            content=outcome.message,
        ),
        follow_up_tool_call=follow_up,
    )


# ── Dispatcher ──────────────────────────────────────────────────────


class ToolCallDispatcher:
    def __init__(
        self,
        *,
        store: StateStore,
        practices: PracticeDirectory,
        scheduler: SchedulingAdapter,
        classifier: IntentClassifier,
        settings: WorkflowSettings | None = None,
        metrics: MetricsClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._practices = practices
        self._scheduler = scheduler
        self._classifier = classifier
        self._settings = settings or WorkflowSettings()
        self._metrics = metrics or MetricsClient()
        self._clock = clock

    def dispatch(self, event: ToolCallEvent) -> ToolCallResponse:
        t0 = time.perf_counter()
        try:
            response, outcome = self._dispatch(event)
        except Exception:
            logger.exception(
                "Call %s: unhandled error in tool call %s (%s)",
                event.call_id, event.tool_call_id, event.tool_name,
            )
            response = error_response(event.tool_call_id, "SYSTEM_ERROR")
            outcome = response.result["category"]
            self._log_tool_call(event, response)

        latency_ms = (time.perf_counter() - t0) * 1000
        self._metrics.record_tool_call(event.tool_name or "unknown", outcome, latency_ms)
        logger.info(
            "Call %s tool %s (%s) -> %s in %.0fms",
            event.call_id, event.tool_call_id, event.tool_name, outcome, latency_ms,
        )
        return response

    def _dispatch(self, event: ToolCallEvent) -> tuple[ToolCallResponse, str]:
        previous = self._store.get_tool_result(event.call_id, event.tool_call_id)
        if previous is not None and previous.success:
            logger.info("Call %s: replaying stored response for %s", event.call_id, event.tool_call_id)
            return ToolCallResponse.model_validate(previous.response), REPLAY_OUTCOME

        state = self._store.load(event.call_id)
        practice = self._resolve_practice(event, state)
        if practice is None:
            return self._finish(event, error_response(event.tool_call_id, "PRACTICE_NOT_CONFIGURED"))
        if state is None:
            state = ConversationState.new(event.call_id, practice.practice_id)
            logger.info("Call %s: new conversation for practice %s", event.call_id, practice.practice_id)

        kind = ToolKind.parse(event.tool_name)
        if kind is None:
            logger.warning("Call %s: unsupported tool %r", event.call_id, event.tool_name)
            self._save(state, state, event)
            return self._finish(event, error_response(event.tool_call_id, "UNSUPPORTED_TOOL", stage=state.stage))

        spec = TOOL_REGISTRY[kind]
        try:
            args = spec.args_model.model_validate(decode_arguments(event.arguments))
        except (ValidationError, ValueError) as exc:
            logger.warning("Call %s: invalid arguments for %s: %s", event.call_id, kind.value, exc)
            return self._finish(event, error_response(event.tool_call_id, "INVALID_ARGUMENTS", stage=state.stage))

        ctx = HandlerContext(
            practice=practice,
            scheduler=self._scheduler,
            classifier=self._classifier,
            settings=self._settings,
            clock=self._clock,
        )
        handled = spec.handler(state, args, ctx)
        if handled.state is not state:
            self._save(state, handled.state, event)
        return self._finish(event, build_response(event.tool_call_id, handled))

    def _resolve_practice(self, event: ToolCallEvent, state: ConversationState | None) -> PracticeConfig | None:
        if state is not None:
            practice = self._practices.get(state.practice_id)
        else:
            practice = self._practices.resolve(event.practice_id, event.assistant_id)
        if practice is None:
            logger.error(
                "Call %s: no practice for practice_id=%r assistant_id=%r",
                event.call_id, event.practice_id, event.assistant_id,
            )
            return None
        if not practice.is_scheduling_configured:
            logger.error("Practice %s has incomplete scheduling setup", practice.practice_id)
            return None
        return practice

    def _save(self, base: ConversationState, new_state: ConversationState, event: ToolCallEvent) -> None:
        stamped = merge_state(
            new_state,
            StateUpdate(
                last_tool_call_id=event.tool_call_id,
                updated_at=self._clock(),
                version=base.version + 1,
            ),
        )
        self._store.save(stamped)

    def _finish(self, event: ToolCallEvent, response: ToolCallResponse) -> tuple[ToolCallResponse, str]:
        self._log_tool_call(event, response)
        outcome = "success" if response.success else response.result.get("category", "unknown")
        return response, outcome

    def _log_tool_call(self, event: ToolCallEvent, response: ToolCallResponse) -> None:
        try:
            self._store.record_tool_call(
                ToolCallRecord(
                    tool_call_id=event.tool_call_id,
                    call_id=event.call_id,
                    tool_name=event.tool_name or "",
                    success=response.success,
                    response=response.to_wire(),
                )
            )
        except Exception:
            logger.exception("Call %s: failed to write tool-call log for %s", event.call_id, event.tool_call_id)
