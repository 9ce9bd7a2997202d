"""
Weekly program schedule and the lookups the bot needs from it.

Days use 0 = Sunday .. 6 = Saturday; times are 24h "HH:MM" strings. An
entry is either a standard show ({"now", "next", optional "image"}) or a
free-form {"customMessage"} that is only ever posted.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from config import MOVIE_PREFIX, SCHEDULE_FILE, SCHEDULE_TIMEZONE
from utils import strip_markdown

logger = logging.getLogger(__name__)

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
# Listings show Monday first and Sunday last.
WEEK_ORDER = [1, 2, 3, 4, 5, 6, 0]

Schedule = Dict[int, Dict[str, Dict[str, Any]]]

SAMPLE_SCHEDULE: Schedule = {
    0: {
        "09:00": {"now": "Morning Cartoons", "next": "Sunday News"},
    },
    1: {
        "10:00": {"now": "Morning Show", "next": "Cooking Time", "image": "https://example.com/images/cooking.png"},
    },
    3: {
        "12:30": {"now": "Scrubs", "next": "South Park"},
        "13:00": {"now": "South Park", "next": "Invader Zim"},
        "13:30": {"customMessage": "**Reminder:** Server meeting at 2PM!"},
        "14:00": {"now": "MOVIE: Spider-Man", "next": "News Update"},
    },
}


def load_schedule(path: str = SCHEDULE_FILE) -> Schedule:
    """Load the schedule from a JSON file, falling back to the sample."""
    if not path:
        return SAMPLE_SCHEDULE
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)
    except (OSError, ValueError) as error:
        logger.error("Could not load schedule from %s: %s; using sample schedule", path, error)
        return SAMPLE_SCHEDULE
    return {int(day): dict(entries) for day, entries in raw.items()}


def is_standard_entry(entry: Optional[Dict[str, Any]]) -> bool:
    return bool(entry and entry.get("now") and entry.get("next"))


def schedule_now() -> datetime:
    """Current local time, or time in SCHEDULE_TIMEZONE when configured."""
    if SCHEDULE_TIMEZONE:
        return datetime.now(ZoneInfo(SCHEDULE_TIMEZONE))
    return datetime.now()


def weekday_index(moment: datetime) -> int:
    """Python's Monday=0 weekday shifted to the schedule's Sunday=0."""
    return (moment.weekday() + 1) % 7


def format_time_12h(time_string: str) -> str:
    if not time_string or ":" not in time_string:
        return time_string
    hour_str, minute_str = time_string.split(":", 1)
    try:
        hour, minute = int(hour_str), int(minute_str)
    except ValueError:
        return time_string
    suffix = "PM" if hour >= 12 else "AM"
    hour = hour % 12 or 12
    return f"{hour}:{minute:02d} {suffix}"


def format_guide_message(entry: Optional[Dict[str, Any]]) -> str:
    if not entry:
        return "Error: Schedule data missing."
    custom = entry.get("customMessage")
    if isinstance(custom, str):
        return custom
    if not is_standard_entry(entry):
        logger.warning("Invalid standard schedule entry: %s", entry)
        return "Schedule information is currently unavailable."
    message = f"Now Playing: **{entry['now']}**\nUp Next: **{entry['next']}**"
    image = entry.get("image")
    if isinstance(image, str) and image.strip():
        message += f"\n{image.strip()}"
    return message


class ProgramSchedule:
    """Read-only lookups over a weekly schedule."""

    def __init__(self, entries: Optional[Schedule] = None):
        self.entries: Schedule = entries if entries is not None else load_schedule()

    def entries_at(self, moment: datetime) -> List[Dict[str, Any]]:
        """Entries that start exactly at this minute."""
        key = moment.strftime("%H:%M")
        entry = self.entries.get(weekday_index(moment), {}).get(key)
        return [entry] if entry else []

    def now_and_next(self, moment: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Last standard entry that started today at or before `moment`."""
        moment = moment or schedule_now()
        current = moment.strftime("%H:%M")
        latest = None
        for time_key in sorted(self.entries.get(weekday_index(moment), {})):
            if time_key > current:
                break
            entry = self.entries[weekday_index(moment)][time_key]
            if is_standard_entry(entry):
                latest = entry
        return latest

    def current_show_title(self, moment: Optional[datetime] = None) -> Optional[str]:
        entry = self.now_and_next(moment)
        if entry is None:
            return None
        return strip_markdown(entry["now"]) or None

    def _day_lines(self, day: int) -> List[str]:
        lines = []
        for time_key in sorted(self.entries.get(day, {})):
            entry = self.entries[day][time_key]
            if entry and entry.get("now"):
                lines.append(f"{format_time_12h(time_key)} - {strip_markdown(entry['now'])}")
        return lines

    def day_listing(self, moment: Optional[datetime] = None) -> str:
        day = weekday_index(moment or schedule_now())
        output = f"**Schedule for {DAY_NAMES[day]}:**\n"
        if not self.entries.get(day):
            return output + "No schedule found for today."
        lines = self._day_lines(day)
        if not lines:
            return output + "No specific shows listed for today."
        return output + "\n".join(lines)

    def week_listing(self) -> str:
        blocks = []
        for day in WEEK_ORDER:
            lines = self._day_lines(day)
            if lines:
                blocks.append(f"**{DAY_NAMES[day]}**\n" + "\n".join(lines))
        return "\n\n".join(blocks)

    def movie_listing(self) -> str:
        lines = []
        for day in WEEK_ORDER:
            for time_key in sorted(self.entries.get(day, {})):
                entry = self.entries[day][time_key]
                title = (entry or {}).get("now") or ""
                if title.strip().upper().startswith(MOVIE_PREFIX):
                    movie = title.strip()[len(MOVIE_PREFIX):].strip()
                    lines.append(f"{DAY_NAMES[day]}, {format_time_12h(time_key)} - {movie}")
        return "\n".join(lines)
