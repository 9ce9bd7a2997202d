"""
Discord prefix commands for the channel bot.
"""

import logging
import os
import time
from typing import Any, Dict, List, Optional

import discord
from discord.ext import commands

from announcer import ScheduleAnnouncer
from config import (
    ADMIN_ROLE_NAME,
    BULK_DELETE_MAX_AGE_SECONDS,
    CLEAR_WINDOW_SECONDS,
    GUIDE_CHANNEL_ID,
    MEDIA_DIR,
    MEDIA_PAGE_SIZE,
    REFRESH_SCRIPT_PATH,
    TARGET_VOICE_CHANNEL_ID,
)
from errors import ConfigurationError, ScriptError, error_manager
from events import ManagedEvent
from executors import ScriptExecutor
from managers import DownloadManager
from models import DownloadEvent, DownloadEventType, Mode, TransitionResult, VoteChoice, VoteKind
from orchestrator import ModeOrchestrator
from schedule import ProgramSchedule, format_guide_message
from utils import (
    find_first_url,
    format_duration,
    format_file_size,
    list_media_files,
    sanitize_user_input,
    split_message,
)
from voting import VoteSession

logger = logging.getLogger(__name__)

_VOTE_TITLES = {
    VoteKind.MODE_TO_CUSTOM: "switch to **Custom mode**",
    VoteKind.MODE_TO_SCHEDULED: "go back to the **schedule**",
    VoteKind.SKIP_ITEM: "**skip** the current item",
    VoteKind.CONFIRM_FILE_PLAY: "play **{file}**",
}


async def _safe_send(channel: Any, content: str) -> Optional[Any]:
    try:
        return await channel.send(content)
    except discord.HTTPException:
        logger.error("Error sending message", exc_info=True)
        return None


async def _safe_edit(message: Any, content: str) -> None:
    if message is None:
        return
    try:
        await message.edit(content=content)
    except discord.HTTPException:
        logger.debug("Message edit failed", exc_info=True)


class BotHandlers(commands.Cog):
    """Registers bot commands and renders orchestrator and download results."""

    def __init__(
        self,
        bot: commands.Bot,
        orchestrator: ModeOrchestrator,
        download_manager: DownloadManager,
        schedule: ProgramSchedule,
        scripts: ScriptExecutor,
        event: ManagedEvent,
        announcer: Optional[ScheduleAnnouncer] = None,
        media_dir: str = MEDIA_DIR,
        refresh_script: str = REFRESH_SCRIPT_PATH,
    ):
        self.bot = bot
        self.orchestrator = orchestrator
        self.download_manager = download_manager
        self.schedule = schedule
        self.scripts = scripts
        self.event = event
        self.announcer = announcer
        self.media_dir = media_dir
        self.refresh_script = refresh_script

        self.guide_channel: Optional[Any] = None
        self.voice_channel: Optional[Any] = None
        self.notice_channel: Optional[Any] = None
        self.file_listings: Dict[int, List[str]] = {}
        self.progress_messages: Dict[int, Any] = {}

        orchestrator.notify = self.notify
        download_manager.on_event = self.on_download_event

    # ------------------------------------------------------------------
    # Lifecycle

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        logger.info("Logged in as %s", self.bot.user)
        await self.bot.change_presence(
            activity=discord.Activity(type=discord.ActivityType.watching, name="the TV Guide")
        )

        if GUIDE_CHANNEL_ID:
            channel = await self._fetch_channel(GUIDE_CHANNEL_ID)
            if isinstance(channel, discord.abc.Messageable):
                self.guide_channel = channel
                logger.info("TV Guide post channel OK: #%s", channel)
            else:
                logger.error("DISCORD_CHANNEL_ID %s is not a text channel", GUIDE_CHANNEL_ID)
        else:
            logger.warning("DISCORD_CHANNEL_ID not set; scheduled text posts disabled")

        if TARGET_VOICE_CHANNEL_ID:
            channel = await self._fetch_channel(TARGET_VOICE_CHANNEL_ID)
            if isinstance(channel, discord.VoiceChannel):
                if channel.guild.me.guild_permissions.manage_events:
                    self.voice_channel = channel
                    self.event.venue = channel
                    logger.info("Event voice channel OK: #%s", channel)
                else:
                    logger.error("Bot lacks 'Manage Events' in %s; event updates disabled", channel.guild)
            else:
                logger.error("TARGET_VOICE_CHANNEL_ID %s is not a voice channel", TARGET_VOICE_CHANNEL_ID)
        else:
            logger.warning("TARGET_VOICE_CHANNEL_ID not set; scheduled event updates disabled")

        if self.event.enabled:
            if await self.event.ensure() is not None:
                await self.orchestrator.refresh_event_name()
            else:
                logger.error("Could not find or create the managed event")

        if self.announcer is not None:
            self.announcer.post = self.post_guide if self.guide_channel is not None else None
            self.announcer.rename = self.orchestrator.apply_scheduled_name if self.event.enabled else None
            self.announcer.start()

    async def _fetch_channel(self, channel_id: int) -> Optional[Any]:
        try:
            return await self.bot.fetch_channel(channel_id)
        except discord.HTTPException as error:
            logger.error("Failed fetching channel %s: %s", channel_id, error)
            return None

    async def post_guide(self, message: str) -> None:
        if self.guide_channel is not None:
            await self.guide_channel.send(message)

    async def notify(self, message: str) -> None:
        channel = self.notice_channel or self.guide_channel
        if channel is not None:
            await _safe_send(channel, message)

    # ------------------------------------------------------------------
    # Schedule commands

    @commands.command(name="now")
    async def handle_now(self, ctx: commands.Context) -> None:
        if self.orchestrator.mode is Mode.CUSTOM:
            await ctx.reply(f"Custom mode is on. Event: **{self.event.name or 'Custom Mode'}**")
            return
        entry = self.schedule.now_and_next()
        if entry is None:
            await ctx.reply("Nothing seems to be scheduled right now.")
            return
        await ctx.reply(format_guide_message(entry))

    @commands.command(name="day")
    async def handle_day(self, ctx: commands.Context) -> None:
        for chunk in split_message(self.schedule.day_listing(), "```\n", "\n```"):
            await ctx.send(chunk)

    @commands.command(name="week")
    async def handle_week(self, ctx: commands.Context) -> None:
        listing = self.schedule.week_listing()
        if not listing:
            await ctx.reply("No schedule found for the entire week.")
            return
        for chunk in split_message(listing, "```\n--- Weekly Schedule ---\n\n", "\n```"):
            await ctx.send(chunk)

    @commands.command(name="movies")
    async def handle_movies(self, ctx: commands.Context) -> None:
        listing = self.schedule.movie_listing()
        if not listing:
            await ctx.reply("No entries marked with 'MOVIE:' found in the schedule.")
            return
        for chunk in split_message(listing, "```\n--- Movie Listings ---\n\n", "\n```"):
            await ctx.send(chunk)

    @commands.command(name="refresh")
    async def handle_refresh(self, ctx: commands.Context) -> None:
        await ctx.reply("Attempting to refresh the stream event & trigger script!")

        if not self.event.enabled:
            await ctx.send("⚠️ Cannot update event: channel not configured.")
        else:
            await ctx.send("Updating event name...")
            if not await self.orchestrator.refresh_event_name():
                await ctx.send("⚠️ Event name update failed. Check console logs.")

        await ctx.send("⚙️ Executing refresh script...")
        try:
            await self.scripts.run(self.refresh_script, name="refresh script")
            await ctx.send("✅ Refresh script executed.")
        except ScriptError as error:
            await ctx.send(error_manager.script_failure_message(error, "execute the refresh script"))

        await ctx.send("🔄 Refresh sequence complete.")

    @commands.command(name="clear")
    @commands.guild_only()
    async def handle_clear(self, ctx: commands.Context) -> None:
        if not ctx.author.guild_permissions.manage_messages:
            await ctx.reply("You need the 'Manage Messages' permission to use this command.")
            return
        bot_perms = ctx.channel.permissions_for(ctx.guild.me)
        if not bot_perms.manage_messages or not bot_perms.read_message_history:
            await ctx.reply("I need 'Manage Messages' and 'Read Message History' in this channel.")
            return

        status = await ctx.reply("🧹 Fetching my messages from the last 12 hours...")
        now = time.time()
        try:
            to_delete = [
                message
                async for message in ctx.channel.history(limit=100)
                if message.author.id == self.bot.user.id
                and message.id != status.id
                and now - message.created_at.timestamp() < min(CLEAR_WINDOW_SECONDS, BULK_DELETE_MAX_AGE_SECONDS)
            ]
            if not to_delete:
                await _safe_edit(status, "🧹 No messages from me found in the last 12 hours to delete.")
                return
            await ctx.channel.delete_messages(to_delete)
            await _safe_edit(status, f"✅ Successfully deleted {len(to_delete)} message(s).")
        except discord.HTTPException:
            logger.error("Error during !clear", exc_info=True)
            await _safe_edit(status, "❌ An error occurred while trying to delete messages.")

    # ------------------------------------------------------------------
    # Votes and mode

    async def _open_vote_message(self, ctx: commands.Context, kind: VoteKind, duration: float, **fmt: str) -> Any:
        title = _VOTE_TITLES[kind].format(**fmt)
        return await ctx.send(
            f"🗳️ Vote to {title}! Reply `!yes` or `!no` ({format_duration(duration)} left)."
        )

    def _tick_renderer(self, message: Any):
        async def render(session: VoteSession, remaining: float) -> None:
            await _safe_edit(
                message,
                f"🗳️ Vote in progress: {session.yes_count} yes / {session.no_count} no "
                f"({format_duration(remaining)} left). Reply `!yes` or `!no`.",
            )
        return render

    async def _report(self, ctx: commands.Context, result: TransitionResult) -> None:
        prefix = "✅" if result.ok else "❌"
        await ctx.send(f"{prefix} {result.message}")
        if result.warning:
            await ctx.send(f"⚠️ {result.warning}")

    @commands.command(name="mode")
    @commands.guild_only()
    async def handle_mode(self, ctx: commands.Context) -> None:
        if self.orchestrator.active_vote is not None:
            await ctx.reply("Another vote is already running. Wait for it to finish.")
            return
        self.notice_channel = ctx.channel
        kind = VoteKind.MODE_TO_CUSTOM if self.orchestrator.mode is Mode.SCHEDULED else VoteKind.MODE_TO_SCHEDULED
        duration = self.orchestrator.settings.mode_vote_seconds
        message = await self._open_vote_message(ctx, kind, duration)
        result = await self.orchestrator.request_mode_vote(context=ctx.channel.id, on_tick=self._tick_renderer(message))
        await self._report(ctx, result)

    @commands.command(name="skip")
    @commands.guild_only()
    async def handle_skip(self, ctx: commands.Context) -> None:
        if self.orchestrator.mode is not Mode.CUSTOM:
            await ctx.reply("Skipping is only available in Custom mode.")
            return
        if self.orchestrator.active_vote is not None:
            await ctx.reply("Another vote is already running. Wait for it to finish.")
            return

        participants = self.count_participants()
        on_tick = None
        if participants != 2:
            duration = self.orchestrator.skip_vote_duration()
            message = await self._open_vote_message(ctx, VoteKind.SKIP_ITEM, duration)
            on_tick = self._tick_renderer(message)
        result = await self.orchestrator.request_skip(
            context=ctx.channel.id, participants=participants, on_tick=on_tick
        )
        await self._report(ctx, result)

    def count_participants(self) -> Optional[int]:
        """Non-bot members currently in the event voice channel."""
        if self.voice_channel is None:
            return None
        return sum(1 for member in self.voice_channel.members if not member.bot)

    async def _ballot(self, ctx: commands.Context, choice: VoteChoice) -> None:
        if self.orchestrator.active_vote is None:
            await ctx.reply("There is no vote running right now.")
            return
        if self.orchestrator.cast_ballot(ctx.author.id, choice, context=ctx.channel.id):
            try:
                await ctx.message.add_reaction("✅")
            except discord.HTTPException:
                logger.debug("Could not react to ballot", exc_info=True)

    @commands.command(name="yes")
    async def handle_yes(self, ctx: commands.Context) -> None:
        await self._ballot(ctx, VoteChoice.YES)

    @commands.command(name="no")
    async def handle_no(self, ctx: commands.Context) -> None:
        await self._ballot(ctx, VoteChoice.NO)

    @commands.command(name="watching")
    async def handle_watching(self, ctx: commands.Context) -> None:
        if not self.orchestrator.respond_still_watching(True):
            await ctx.reply("Nobody asked yet, but thanks for watching!")

    @commands.command(name="notwatching")
    async def handle_not_watching(self, ctx: commands.Context) -> None:
        if not self.orchestrator.respond_still_watching(False):
            await ctx.reply("There is no still-watching check running.")

    def _is_admin(self, member: Any) -> bool:
        permissions = getattr(member, "guild_permissions", None)
        if permissions is not None and permissions.administrator:
            return True
        if ADMIN_ROLE_NAME:
            return any(role.name == ADMIN_ROLE_NAME for role in getattr(member, "roles", []))
        return False

    @commands.command(name="force")
    @commands.guild_only()
    async def handle_force(self, ctx: commands.Context, target: Optional[str] = None) -> None:
        if not self._is_admin(ctx.author):
            await ctx.reply("Only admins can force a mode change.")
            return
        modes = {"custom": Mode.CUSTOM, "scheduled": Mode.SCHEDULED, "schedule": Mode.SCHEDULED}
        if target is not None and target.lower() not in modes:
            await ctx.reply("Usage: `!force [custom|scheduled]`")
            return
        self.notice_channel = ctx.channel
        result = await self.orchestrator.force_mode(modes.get((target or "").lower()))
        await self._report(ctx, result)

    # ------------------------------------------------------------------
    # Local files

    @commands.command(name="files")
    async def handle_files(self, ctx: commands.Context, page: int = 1) -> None:
        if not self.media_dir:
            await ctx.reply("⚠️ The media folder is not configured.")
            return
        files, pages = list_media_files(self.media_dir, page, MEDIA_PAGE_SIZE)
        if not files:
            await ctx.reply("No playable files found.")
            return
        page = min(max(page, 1), pages)
        self.file_listings[ctx.channel.id] = files
        lines = [f"{index}. {os.path.basename(file)}" for index, file in enumerate(files, start=1)]
        body = "\n".join(lines) + f"\n\nPage {page}/{pages}. Use `!play <number>` in Custom mode."
        for chunk in split_message(body, "```\n", "\n```"):
            await ctx.send(chunk)

    @commands.command(name="play")
    @commands.guild_only()
    async def handle_play(self, ctx: commands.Context, number: int) -> None:
        files = self.file_listings.get(ctx.channel.id) or []
        if not 1 <= number <= len(files):
            await ctx.reply("Pick a number from the latest `!files` listing.")
            return
        if self.orchestrator.active_vote is not None:
            await ctx.reply("Another vote is already running. Wait for it to finish.")
            return
        path = files[number - 1]
        on_tick = None
        if self.orchestrator.mode is Mode.CUSTOM:
            name = os.path.basename(path)
            message = await self._open_vote_message(
                ctx, VoteKind.CONFIRM_FILE_PLAY, self.orchestrator.settings.file_play_vote_seconds, file=name
            )
            on_tick = self._tick_renderer(message)
        result = await self.orchestrator.request_file_play(path, context=ctx.channel.id, on_tick=on_tick)
        await self._report(ctx, result)

    # ------------------------------------------------------------------
    # Downloads

    @commands.command(name="download")
    async def handle_download(self, ctx: commands.Context, url: str, *, folder: Optional[str] = None) -> None:
        url = sanitize_user_input(url)
        url = find_first_url(url) or url
        try:
            job, notice = await self.download_manager.enqueue(
                url,
                requester_id=ctx.author.id,
                channel_id=ctx.channel.id,
                subfolder=sanitize_user_input(folder) if folder else None,
            )
        except ValueError as error:
            await ctx.reply(f"❌ {error}")
            return
        except ConfigurationError:
            logger.error("Download requested but DOWNLOAD_DIR is unusable")
            await ctx.reply("⚠️ Downloads are not configured on this host.")
            return

        position = self.download_manager.position(job.job_id)
        where = "starting now" if position == 0 else f"position #{position}"
        await ctx.reply(f"⏳ Download #{job.job_id} queued ({where}).")
        if notice:
            await ctx.send(f"ℹ️ {notice}")

    @commands.command(name="cancel")
    async def handle_cancel(self, ctx: commands.Context) -> None:
        count = self.download_manager.cancel_requester(ctx.author.id)
        if count:
            await ctx.reply(f"🛑 Cancelling {count} of your download(s).")
        else:
            await ctx.reply("You have no queued or active downloads.")

    @commands.command(name="cancelall")
    @commands.guild_only()
    async def handle_cancel_all(self, ctx: commands.Context) -> None:
        if not self._is_admin(ctx.author):
            await ctx.reply("Only admins can cancel every download.")
            return
        count = self.download_manager.cancel_all()
        await ctx.reply(f"🛑 Cancelled {count} download(s).")

    @commands.command(name="queue")
    async def handle_queue(self, ctx: commands.Context) -> None:
        active = self.download_manager.active_job
        queued = self.download_manager.queued_jobs()
        if active is None and not queued:
            await ctx.reply("The download queue is empty.")
            return
        lines = []
        if active is not None:
            lines.append(f"▶️ #{active.job_id} {active.url} (<@{active.requester_id}>)")
        for index, job in enumerate(queued, start=1):
            lines.append(f"{index}. #{job.job_id} {job.url} (<@{job.requester_id}>)")
        for chunk in split_message("\n".join(lines)):
            await ctx.send(chunk)

    async def on_download_event(self, event: DownloadEvent) -> None:
        job = event.job
        channel = self.bot.get_channel(job.channel_id) if job.channel_id else None
        if channel is None:
            return

        if event.type is DownloadEventType.PROGRESS:
            percent = f"{event.percent:.0f}%" if event.percent is not None else "?"
            eta = f", ETA {format_duration(event.eta)}" if event.eta else ""
            text = f"⬇️ Download #{job.job_id}: {percent}{eta}"
            message = self.progress_messages.get(job.job_id)
            if message is None:
                self.progress_messages[job.job_id] = await _safe_send(channel, text)
            else:
                await _safe_edit(message, text)
            return

        self.progress_messages.pop(job.job_id, None)
        if event.type is DownloadEventType.SUCCEEDED:
            name = os.path.basename(event.path or "")
            size = ""
            if event.path and os.path.isfile(event.path):
                size = f" ({format_file_size(os.path.getsize(event.path))})"
            await _safe_send(channel, f"✅ <@{job.requester_id}> download #{job.job_id} finished: `{name}`{size}")
        elif event.type is DownloadEventType.CANCELLED:
            extra = f" {event.message}" if event.message else ""
            await _safe_send(channel, f"🛑 Download #{job.job_id} cancelled.{extra}")
        else:
            await _safe_send(channel, f"<@{job.requester_id}> download #{job.job_id} failed.\n{event.message}")
