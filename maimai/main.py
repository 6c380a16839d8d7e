"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from maimai.cache import ResultCache
from maimai.clock import LocalClock
from maimai.commands import CommandDispatcher
from maimai.config import cacheable_tools, load_settings
from maimai.db import Database
from maimai.dispatch import DispatchFacade, mcp_client_factory
from maimai.scheduler import ClaimScheduler
from maimai.telegram_adapter import TelegramAdapter

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)

ERROR_REPLY = "Something went wrong, please try again later."


async def run() -> None:
    """Initialize app layers and start processing loop."""

    settings = load_settings()

    db = Database(settings.database_path)
    db.initialize()

    facade = DispatchFacade(
        store=db,
        cache=ResultCache(settings.cache_ttl_seconds),
        cacheable_tools=cacheable_tools(settings),
        client_factory=mcp_client_factory(
            base_url=settings.mcp_url,
            protocol_version=settings.mcp_protocol_version,
            timeout_seconds=settings.request_timeout_seconds,
        ),
    )
    commands = CommandDispatcher(db=db, dispatcher=facade)

    telegram = TelegramAdapter(
        bot_token=settings.telegram_bot_token,
        api_base_url=settings.telegram_api_base_url,
        poll_timeout_seconds=settings.telegram_poll_timeout_seconds,
    )

    scheduler = ClaimScheduler(
        store=db,
        dispatcher=facade,
        clock=LocalClock(),
        notifier=telegram.send_message,
        claim_hour=settings.auto_claim_hour,
        timezone=settings.auto_claim_timezone,
        interval_seconds=settings.auto_claim_check_minutes * 60,
    )
    scheduler_task = scheduler.start()
    LOGGER.info("Bot started")

    try:
        async for message in telegram.poll_messages():
            try:
                reply = await commands.dispatch(message)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Command failed: %r", message.text.split(maxsplit=1)[0])
                reply = ERROR_REPLY
            if reply is None:
                continue
            try:
                await telegram.send_message(message.chat_id, reply)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to send reply to chat %s", message.chat_id)
    except asyncio.CancelledError:
        raise
    finally:
        scheduler.stop()
        await asyncio.gather(scheduler_task, return_exceptions=True)
        LOGGER.info("Bot shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
