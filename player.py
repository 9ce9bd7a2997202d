"""
Query the media player's window title (what is playing in Custom mode).
"""

import asyncio
import csv
import io
import logging
import sys
from abc import ABC, abstractmethod
from typing import Optional

import psutil

from config import PLAYER_PROCESS_NAME

logger = logging.getLogger(__name__)


class MediaPlayerTitleQuery(ABC):
    """Returns the raw window title of the player, or None."""

    @abstractmethod
    async def current_title(self) -> Optional[str]:
        raise NotImplementedError


def is_process_running(process_name: str) -> bool:
    target = process_name.lower()
    for proc in psutil.process_iter(["name"]):
        try:
            if (proc.info.get("name") or "").lower() == target:
                return True
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return False


def parse_tasklist_title(output: str) -> Optional[str]:
    """Pick the first usable window title from `tasklist /v /fo csv /nh` output."""
    for row in csv.reader(io.StringIO(output)):
        if len(row) < 2:
            continue
        title = row[-1].strip()
        if title and title.upper() != "N/A":
            return title
    return None


class TasklistTitleQuery(MediaPlayerTitleQuery):
    """Windows only: reads the player's window title via `tasklist /v`."""

    def __init__(self, process_name: str = PLAYER_PROCESS_NAME, timeout: float = 10.0):
        self.process_name = process_name
        self.timeout = timeout

    async def current_title(self) -> Optional[str]:
        loop = asyncio.get_running_loop()
        if not await loop.run_in_executor(None, is_process_running, self.process_name):
            return None

        try:
            process = await asyncio.create_subprocess_exec(
                "tasklist", "/v", "/fo", "csv", "/nh", "/fi", f"IMAGENAME eq {self.process_name}",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except (OSError, asyncio.TimeoutError) as error:
            logger.warning("Player title query failed: %s", error)
            return None

        if process.returncode != 0:
            return None
        return parse_tasklist_title(stdout.decode(errors="replace"))


def build_title_query(process_name: str = PLAYER_PROCESS_NAME) -> Optional[MediaPlayerTitleQuery]:
    """The capability only exists on Windows; elsewhere there is no query."""
    if sys.platform != "win32":
        logger.info("Media player title query unavailable on %s", sys.platform)
        return None
    return TasklistTitleQuery(process_name)
