"""
Entry point for the Discord channel automation bot.
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

import discord
from aiohttp import web
from discord.ext import commands

from announcer import ScheduleAnnouncer
from config import COMMAND_PREFIX, HEALTH_PORT, LOG_FORMAT, LOG_LEVEL, SHUTDOWN_GRACE_SECONDS, require_bot_token
from errors import setup_logging
from events import DiscordEventPublisher, ManagedEvent
from executors import ScriptExecutor
from handlers import BotHandlers
from managers import DownloadManager
from models import ModeState
from orchestrator import ModeOrchestrator
from player import build_title_query
from schedule import ProgramSchedule
from voting import VoteManager

shutdown_event = asyncio.Event()


def build_intents() -> discord.Intents:
    intents = discord.Intents.default()
    intents.guilds = True
    intents.guild_messages = True
    intents.message_content = True
    intents.guild_scheduled_events = True
    intents.voice_states = True
    return intents


async def start_health_server(port: int, orchestrator: ModeOrchestrator, download_manager: DownloadManager) -> None:
    """Tiny HTTP status endpoint for process supervisors."""
    app = web.Application()

    async def health(request: web.Request) -> web.Response:
        active = download_manager.active_job
        return web.json_response({
            "status": "ok",
            "mode": orchestrator.mode.value,
            "queue_size": download_manager.get_queue_size(),
            "active_download": active.job_id if active is not None else None,
        })

    app.router.add_get("/", health)
    app.router.add_get("/health", health)

    runner = web.AppRunner(app)
    await runner.setup()

    host = "0.0.0.0"
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    logging.getLogger(__name__).info("Health server started on %s:%s", host, port)

    try:
        await shutdown_event.wait()
    finally:
        await runner.cleanup()


async def shutdown(
    bot: commands.Bot,
    orchestrator: ModeOrchestrator,
    download_manager: DownloadManager,
    announcer: ScheduleAnnouncer,
) -> None:
    """Stop everything within the grace period, else force the process out."""
    logger = logging.getLogger(__name__)
    logger.info("Shutting down...")
    shutdown_event.set()

    async def cleanup() -> None:
        await download_manager.stop(timeout=SHUTDOWN_GRACE_SECONDS / 2)
        await orchestrator.shutdown()
        await announcer.stop()
        await bot.close()

    try:
        await asyncio.wait_for(cleanup(), timeout=SHUTDOWN_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.error("Shutdown did not finish in %.0fs; forcing exit", SHUTDOWN_GRACE_SECONDS)
        logging.shutdown()
        os._exit(1)


async def main() -> None:
    logger = setup_logging(level=LOG_LEVEL, format_string=LOG_FORMAT)
    logger.info("Starting channel automation bot")

    bot: Optional[commands.Bot] = None
    orchestrator = None
    download_manager = None
    announcer = None
    health_server_task = None
    try:
        token = require_bot_token()
        bot = commands.Bot(command_prefix=COMMAND_PREFIX, intents=build_intents(), help_command=None)

        schedule = ProgramSchedule()
        scripts = ScriptExecutor()
        state = ModeState()
        event = ManagedEvent(DiscordEventPublisher(bot))
        orchestrator = ModeOrchestrator(
            state=state,
            votes=VoteManager(),
            scripts=scripts,
            event=event,
            title_query=build_title_query(),
            current_show=schedule.current_show_title,
        )
        event.initial_name = orchestrator.initial_event_name
        announcer = ScheduleAnnouncer(schedule, post=None, rename=None, mode=lambda: state.mode)
        download_manager = DownloadManager()

        await bot.add_cog(
            BotHandlers(
                bot=bot,
                orchestrator=orchestrator,
                download_manager=download_manager,
                schedule=schedule,
                scripts=scripts,
                event=event,
                announcer=announcer,
            )
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.ensure_future(shutdown(bot, orchestrator, download_manager, announcer)),
                )
            except NotImplementedError:
                logger.debug("Signal handlers unavailable on this platform")

        if HEALTH_PORT:
            health_server_task = asyncio.create_task(
                start_health_server(HEALTH_PORT, orchestrator, download_manager)
            )
        await bot.start(token)
    except discord.LoginFailure:
        logger.error("Discord login failed: check DISCORD_BOT_TOKEN")
        sys.exit(1)
    except Exception:
        logger.exception("Fatal startup/runtime error")
        sys.exit(1)
    finally:
        shutdown_event.set()
        if health_server_task is not None:
            try:
                await health_server_task
            except Exception:
                logger.debug("Health server shutdown failed", exc_info=True)
        if download_manager is not None:
            await download_manager.stop(timeout=SHUTDOWN_GRACE_SECONDS)
        if orchestrator is not None:
            await orchestrator.shutdown()
        if announcer is not None:
            await announcer.stop()
        if bot is not None and not bot.is_closed():
            await bot.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
