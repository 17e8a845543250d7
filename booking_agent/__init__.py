"""Dental voice booking orchestrator.

Architecture Overview
=====================

A voice assistant (Vapi) books dental appointments by calling server-side
tools, one call per conversational turn.  Each turn is stateless on the
wire, so this service rebuilds the conversation from durable state on every
call:

    webhook → ToolCallDispatcher → StateStore.load → handler
            → (NexHealth / Claude classifier) → merge → StateStore.save
            → response envelope

Key Design Decisions
--------------------
- **One envelope per tool call**: the dispatcher never raises; every failure
  maps to an ``ErrorCategory`` and a pre-authored spoken message.
- **Immutable state**: handlers return a new ``ConversationState`` built by
  the merge engine; returning the same object means "nothing to save".
- **Idempotent retries**: successful responses are kept in a tool-call log
  and replayed verbatim when the platform retries a ``toolCallId``.
- **No double booking**: slots are never locked here.  The scheduling
  system's hold is the arbiter, and holds are re-checked for expiry before
  they are converted into appointments.
- **Classifier**: Claude via LangChain maps free text onto one of the
  practice's appointment types, or none.

Package Structure
-----------------
- ``booking_agent/dispatcher.py``: tool call dispatcher and envelope
- ``booking_agent/tools/``: one handler per tool, plus the registry
- ``booking_agent/workflow.py``: stage graph and guards
- ``booking_agent/slots.py``: slot wording and verbal slot selection
- ``booking_agent/state/``: merge engine and state stores
- ``booking_agent/services/``: NexHealth client, classifier, cache, metrics
- ``booking_agent/practices.py``: read-only practice directory
- ``booking_agent/server.py`` / ``booking_agent/api/``: FastAPI app
- ``booking_agent/main.py``: manual tool-call console
"""
