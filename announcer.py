"""
Posts the TV-guide message at each scheduled time and follows the event name.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from models import Mode
from schedule import ProgramSchedule, format_guide_message, is_standard_entry, schedule_now
from utils import maybe_await, strip_markdown

logger = logging.getLogger(__name__)


class ScheduleAnnouncer:
    """Minute-resolution loop over the weekly schedule."""

    def __init__(
        self,
        schedule: ProgramSchedule,
        post: Optional[Callable[[str], Awaitable[Any]]],
        rename: Optional[Callable[[str], Awaitable[Any]]],
        mode: Callable[[], Mode],
        clock: Callable[[], datetime] = schedule_now,
    ):
        self.schedule = schedule
        self.post = post
        self.rename = rename
        self.mode = mode
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._last_minute: Optional[str] = None

    def start(self) -> None:
        if self.post is None and self.rename is None:
            logger.info("Neither guide channel nor event channel configured; no schedule jobs")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Schedule tick failed")
            now = self.clock()
            await asyncio.sleep(max(1.0, 60 - now.second - now.microsecond / 1_000_000))

    async def tick(self, moment: Optional[datetime] = None) -> int:
        """Fire entries for this minute once. Returns the number fired."""
        moment = moment or self.clock()
        minute_key = moment.strftime("%Y-%m-%d %H:%M")
        if minute_key == self._last_minute:
            return 0
        self._last_minute = minute_key

        fired = 0
        for entry in self.schedule.entries_at(moment):
            fired += 1
            logger.info("Schedule entry triggered at %s", minute_key)
            if self.post is not None:
                try:
                    await maybe_await(self.post(format_guide_message(entry)))
                except Exception:
                    logger.error("Error sending TV guide message", exc_info=True)

            if self.rename is None:
                continue
            if not is_standard_entry(entry):
                logger.info("Schedule entry is custom or invalid; skipping event name update")
                continue
            if self.mode() is not Mode.SCHEDULED:
                logger.info("Custom mode active; schedule does not rename the event")
                continue
            name = strip_markdown(entry["now"])
            if name:
                await maybe_await(self.rename(name))
        return fired
