"""CLI for driving the dispatcher by hand, one tool call per line.

Useful for walking a practice's configuration through a booking without a
voice call.  Each line is a tool name followed by optional JSON arguments:

    find_appointment_type {"patient_request": "I have a toothache"}
    identify_or_create_patient {"full_name": "Ada Lovelace"}
    check_available_slots
    select_slot {"user_selection": "the 2 PM one"}

Usage:
    python -m booking_agent.main --practice-id royal-oak-family-dental
    python -m booking_agent.main --debug     # show HTTP and handler logs
"""

from __future__ import annotations

import argparse
import json
import logging
import uuid

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("booking_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def parse_line(line: str) -> tuple[str, dict]:
    """Split ``tool_name {json}`` into its parts."""
    name, _, raw_args = line.strip().partition(" ")
    raw_args = raw_args.strip()
    return name, (json.loads(raw_args) if raw_args else {})


def main():
    parser = argparse.ArgumentParser(description="Dental voice booking: manual tool-call console")
    parser.add_argument("--practice-id", help="Practice to book against (defaults to the only one)")
    parser.add_argument("--assistant-id", help="Resolve the practice from a voice assistant id")
    parser.add_argument("--debug", action="store_true", help="Show all log messages")
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    # Config reads required secrets at import time, after .env is loaded.
    from booking_agent import config
    from booking_agent.dispatcher import ToolCallDispatcher, ToolCallEvent
    from booking_agent.practices import PracticeDirectory
    from booking_agent.services.classifier import AppointmentTypeClassifier
    from booking_agent.services.nexhealth_client import NexHealthClient
    from booking_agent.state.store import InMemoryStateStore
    from booking_agent.tools.base import WorkflowSettings

    store = InMemoryStateStore()
    scheduler = NexHealthClient()
    dispatcher = ToolCallDispatcher(
        store=store,
        practices=PracticeDirectory.from_file(config.PRACTICES_FILE),
        scheduler=scheduler,
        classifier=AppointmentTypeClassifier(
            model=config.CLASSIFIER_MODEL_NAME, api_key=config.ANTHROPIC_API_KEY,
        ),
        settings=WorkflowSettings.from_config(),
    )

    print("\n" + "=" * 60)
    print("  Dental Voice Booking - tool-call console")
    print("=" * 60)
    print("  Enter: <tool_name> [JSON arguments]")
    print("  Commands: 'state' to show state, 'new' for a new call, 'quit' to exit.")
    print("=" * 60 + "\n")

    call_id = f"cli-{uuid.uuid4().hex[:8]}"
    turn = 0
    logger.info("Started call %s", call_id)

    try:
        while True:
            try:
                line = input("tool> ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break

            if not line:
                continue
            if line.lower() in ("exit", "quit", "q"):
                break
            if line.lower() == "new":
                call_id, turn = f"cli-{uuid.uuid4().hex[:8]}", 0
                print(f"\n>> New call: {call_id}\n")
                continue
            if line.lower() == "state":
                state = store.load(call_id)
                print(state.model_dump_json(indent=2) if state else "(no state yet)")
                continue

            try:
                name, tool_args = parse_line(line)
            except json.JSONDecodeError as exc:
                print(f"  Arguments must be a JSON object: {exc}")
                continue

            turn += 1
            response = dispatcher.dispatch(
                ToolCallEvent(
                    call_id=call_id,
                    tool_call_id=f"{call_id}-{turn}",
                    tool_name=name,
                    arguments=tool_args,
                    practice_id=args.practice_id,
                    assistant_id=args.assistant_id,
                )
            )
            wire = response.to_wire()
            print(f"\nAssistant: {wire['message']['content']}")
            print(f"  result: {json.dumps(wire['result'], default=str)}")
            if "followUpToolCall" in wire:
                print(f"  follow-up: {wire['followUpToolCall']['name']}")
            print()
    finally:
        scheduler.close()


if __name__ == "__main__":
    main()
