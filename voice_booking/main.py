"""CLI simulator for the voice booking agent.

Drives tool calls by hand, the way the voice front end would, against
the real dispatcher.  Useful for walking through a booking end to end
without a phone.

Each line is a tool name followed by its JSON arguments:

    find_appointment_type {"patient_request": "I need a cleaning"}
    select_and_confirm_slot {"user_selection": "the 10:30"}

Usage:
    python -m voice_booking.main --practice demo-practice
    python -m voice_booking.main --practice demo-practice --debug
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
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("voice_booking").setLevel(logging.DEBUG if debug else logging.INFO)


def parse_line(line: str) -> tuple[str, dict]:
    """Split ``tool_name {json}`` into its parts.

    Raises:
        ValueError: the arguments are not a JSON object.
    """
    tool_name, _, raw_args = line.strip().partition(" ")
    if not raw_args.strip():
        return tool_name, {}
    arguments = json.loads(raw_args)
    if not isinstance(arguments, dict):
        raise ValueError("arguments must be a JSON object")
    return tool_name, arguments


def main():
    """Run the interactive tool-call loop."""
    parser = argparse.ArgumentParser(description="Voice booking agent simulator")
    parser.add_argument("--practice", required=True, help="Practice id from the practices file")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    # Imported after logging is configured; config reads the environment on import.
    from voice_booking.orchestrator import build_dispatcher  # noqa: PLC0415

    print("\n" + "=" * 60)
    print("  Voice Booking Agent - Tool-call Simulator")
    print("=" * 60)
    print("  Enter: <tool_name> {json arguments}")
    print("  Commands: 'quit' to exit, 'new' for a new call, 'state' to inspect.")
    print("=" * 60 + "\n")

    dispatcher = build_dispatcher()
    call_id = str(uuid.uuid4())
    logger.info("Started new call: %s", call_id)

    while True:
        try:
            line = input("Tool: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not line:
            continue

        command = line.lower()
        if command in ("exit", "quit", "q"):
            dispatcher.end_call(call_id)
            print("\nGoodbye!")
            break

        if command == "new":
            dispatcher.end_call(call_id)
            call_id = str(uuid.uuid4())
            print(f"\n>> New call started: {call_id[:8]}...\n")
            continue

        if command == "state":
            state = dispatcher.get_state(call_id)
            print(json.dumps(state.model_dump(mode="json") if state else None, indent=2))
            continue

        try:
            tool_name, arguments = parse_line(line)
        except ValueError as e:
            print(f"\n  Could not read arguments: {e}\n")
            continue

        outcome = dispatcher.dispatch(call_id, args.practice, tool_name, arguments)
        status = "ok" if outcome["success"] else f"{outcome['error_code']} ({outcome['error_category']})"
        print(f"\nAgent: {outcome['message']}")
        print(f"       [{outcome['stage']}] {status}\n")


if __name__ == "__main__":
    main()
