"""CLI entry point for the booking agent.

A terminal chat loop for development. For production, use the FastAPI
server (booking_agent/server.py).

Usage:
    python -m booking_agent.main                  # normal mode (quiet)
    python -m booking_agent.main --debug          # debug mode (shows API calls)
    python -m booking_agent.main --channel sms    # pretend to be the SMS adapter
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid

from dotenv import load_dotenv

from booking_agent.models import Channel

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("booking_agent").setLevel(logging.DEBUG if debug else logging.INFO)


async def _chat_loop(channel: Channel) -> None:
    # Config reads the environment at import time
    from booking_agent.agent import create_booking_agent
    from booking_agent.services.booking_client import get_booking_client

    orchestrator = create_booking_agent()
    session_id = f"{channel.value}_{uuid.uuid4()}"
    logger.info("Started new session: %s", session_id)

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue
            command = user_input.lower()
            if command in ("exit", "quit", "q"):
                print("\nGoodbye!")
                break
            if command == "new":
                session_id = f"{channel.value}_{uuid.uuid4()}"
                print(f"\n>> New session started: {session_id}\n")
                continue
            if command == "state":
                if session_id not in orchestrator.store:
                    print("(no messages in this session yet)\n")
                    continue
                print(json.dumps(orchestrator.store.export(session_id), indent=2, default=str))
                continue

            try:
                result = await orchestrator.handle_message(session_id, user_input, channel)
            except Exception as e:
                logger.exception("Error processing message")
                print(f"\nAgent: I'm sorry, something went wrong: {e}")
                print("       Please try again or type 'new' to start a fresh session.\n")
                continue

            print(f"\nAgent: {result.reply}\n")
            if result.missing_required:
                logger.info("Still missing: %s", ", ".join(result.missing_required))
    finally:
        await get_booking_client().aclose()


def main():
    parser = argparse.ArgumentParser(description="Booking agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--channel", choices=[c.value for c in Channel], default=Channel.CHAT.value,
        help="Channel to simulate (affects session id prefix)",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Booking Agent - CLI Chat")
    print("=" * 60)
    print("  Commands: 'quit' to exit, 'new' for a new session,")
    print("            'state' to print the session record.")
    print("=" * 60 + "\n")

    asyncio.run(_chat_loop(Channel(args.channel)))


if __name__ == "__main__":
    main()
