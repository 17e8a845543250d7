"""Pydantic schemas for the FastAPI endpoints.

Inbound models follow the voice platform's (Vapi) ``tool-calls`` server
message.  Unknown fields are ignored: the platform adds fields freely.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class VapiFunction(_Lenient):
    name: str | None = None
    arguments: dict[str, Any] | str | None = None


class VapiToolCall(_Lenient):
    """One tool call.  ``function.name``/``function.arguments`` or flat
    ``name``/``arguments`` are both accepted."""

    id: str | None = None
    function: VapiFunction | None = None
    name: str | None = None
    arguments: dict[str, Any] | str | None = None

    @property
    def tool_name(self) -> str | None:
        if self.function is not None and self.function.name:
            return self.function.name
        return self.name

    @property
    def tool_arguments(self) -> dict[str, Any] | str | None:
        if self.function is not None and self.function.arguments is not None:
            return self.function.arguments
        return self.arguments


class VapiCall(_Lenient):
    id: str | None = None
    assistant_id: str | None = Field(default=None, alias="assistantId")
    metadata: dict[str, Any] = Field(default_factory=dict)


class VapiMessage(_Lenient):
    type: str | None = None
    call: VapiCall | None = None
    tool_call_list: list[VapiToolCall] = Field(default_factory=list, alias="toolCallList")
    tool_calls: list[VapiToolCall] = Field(default_factory=list, alias="toolCalls")
    assistant: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _merge_tool_call_aliases(self) -> VapiMessage:
        if not self.tool_call_list and self.tool_calls:
            self.tool_call_list = list(self.tool_calls)
        return self

    @property
    def assistant_id(self) -> str | None:
        if self.call is not None and self.call.assistant_id:
            return self.call.assistant_id
        if self.assistant:
            return self.assistant.get("id")
        return None

    @property
    def practice_id(self) -> str | None:
        if self.call is not None:
            value = self.call.metadata.get("practiceId") or self.call.metadata.get("practice_id")
            return str(value) if value else None
        return None


class VapiWebhook(_Lenient):
    message: VapiMessage


class ToolCallResults(BaseModel):
    """Response body for a ``tool-calls`` message."""

    results: list[dict[str, Any]]
    status: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "dental-voice-booking"


class ToolCallLogEntry(BaseModel):
    tool_call_id: str
    tool_name: str
    success: bool
    response: dict[str, Any]
    created_at: str
