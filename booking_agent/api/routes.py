"""FastAPI route definitions for the voice booking webhook and debug views."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from booking_agent.api.schemas import HealthResponse, ToolCallLogEntry, ToolCallResults, VapiWebhook
from booking_agent.dispatcher import ToolCallDispatcher, ToolCallEvent, error_response
from booking_agent.state.store import StateStore

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_dispatcher(request: Request) -> ToolCallDispatcher:
    """Retrieve the dispatcher built in the FastAPI lifespan (see ``server.py``)."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return dispatcher


def _get_store(request: Request) -> StateStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="The service is still starting up.")
    return store


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/vapi/tool-calls", response_model=ToolCallResults, response_model_exclude_none=True)
async def vapi_tool_calls(payload: VapiWebhook, http_request: Request):
    """Answer every tool call in a ``tool-calls`` server message.

    Tool calls in one message are dispatched in order, each through
    ``asyncio.to_thread`` since the dispatcher blocks on the scheduling API
    and the classifier.  The platform always gets HTTP 200 with one result
    per tool call; failures are described inside the result.
    """
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    message = payload.message

    if message.type and message.type != "tool-calls":
        logger.info("[%s] Ignoring %s message", request_id, message.type)
        return {"results": [], "status": "ignored"}

    call_id = message.call.id if message.call else None
    results = []
    for index, tool_call in enumerate(message.tool_call_list):
        tool_call_id = tool_call.id or f"{call_id or 'unknown'}-{index}"
        if not call_id:
            logger.warning("[%s] Tool call %s without a call id", request_id, tool_call_id)
            results.append(error_response(tool_call_id, "INVALID_ARGUMENTS").to_wire())
            continue
        event = ToolCallEvent(
            call_id=call_id,
            tool_call_id=tool_call_id,
            tool_name=tool_call.tool_name,
            arguments=tool_call.tool_arguments,
            practice_id=message.practice_id,
            assistant_id=message.assistant_id,
        )
        response = await asyncio.to_thread(dispatcher.dispatch, event)
        results.append(response.to_wire())

    if not results:
        logger.warning("[%s] tool-calls message without tool calls (call %s)", request_id, call_id)
        results.append(error_response(f"{call_id or 'unknown'}-0", "INVALID_ARGUMENTS").to_wire())
    return {"results": results}


@router.get("/calls/{call_id}/state")
async def get_call_state(call_id: str, http_request: Request):
    """Stored conversation state for a call (debugging)."""
    store = _get_store(http_request)
    state = await asyncio.to_thread(store.load, call_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Unknown call.")
    return state.model_dump(mode="json")


@router.get("/calls/{call_id}/tool-calls", response_model=list[ToolCallLogEntry])
async def get_call_tool_calls(call_id: str, http_request: Request):
    """Tool-call log for a call, oldest first (debugging)."""
    store = _get_store(http_request)
    records = await asyncio.to_thread(store.list_tool_calls, call_id)
    return [
        ToolCallLogEntry(
            tool_call_id=r.tool_call_id,
            tool_name=r.tool_name,
            success=r.success,
            response=r.response,
            created_at=r.created_at.isoformat(),
        )
        for r in records
    ]
