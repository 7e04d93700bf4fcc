# main.py
"""
Local console for the sales ledger: type messages as a given sender and read
the replies. Uses the same controller as the HTTP adapter.

    python -m agents.main --sender 5511999990000
"""
import argparse
import asyncio
import logging
from typing import Optional

from agents.controller import DialogueController
from common.config_loader import load_settings, mask_key
from common.logging_config import configure_logging
from db.session import Database

logger = logging.getLogger("sales-ledger")


async def run_console(sender: str) -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.openai_api_key:
        logger.error("OPENAI_API_KEY is missing; set it in .env or the environment.")
        return
    logger.info("OpenAI key: %s", mask_key(settings.openai_api_key))

    database = Database.from_settings(settings)
    await database.init()
    controller = DialogueController.from_settings(database, settings)
    try:
        while True:
            text = await _next_line()
            if text is None or text.strip().lower() in ("/quit", "/exit"):
                break
            if not text.strip():
                continue
            reply = await controller.handle_inbound_message(sender, text)
            print(reply)
            print()
    finally:
        await database.dispose()


async def _next_line() -> Optional[str]:
    try:
        return await asyncio.to_thread(input, "> ")
    except EOFError:
        return None


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Chat with the sales ledger from the terminal.")
    parser.add_argument("--sender", default="console", help="sender key (partition), e.g. a phone number")
    args = parser.parse_args(argv)
    asyncio.run(run_console(args.sender))


if __name__ == "__main__":
    main()
