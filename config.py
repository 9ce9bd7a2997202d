"""
Configuration for the channel automation bot.
"""

import os
import re
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def require_bot_token() -> str:
    """Return bot token or raise if it is not configured."""
    token = os.getenv("DISCORD_BOT_TOKEN", "").strip()
    if not token:
        raise RuntimeError("Set the DISCORD_BOT_TOKEN environment variable")
    return token


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Discord
COMMAND_PREFIX: str = os.getenv("COMMAND_PREFIX", "!")
GUIDE_CHANNEL_ID: Optional[int] = _optional_int("DISCORD_CHANNEL_ID")
TARGET_VOICE_CHANNEL_ID: Optional[int] = _optional_int("TARGET_VOICE_CHANNEL_ID")
ADMIN_ROLE_NAME: str = os.getenv("ADMIN_ROLE_NAME", "").strip()
DISCORD_MESSAGE_LIMIT: int = 2000
CLEAR_WINDOW_SECONDS: int = 12 * 60 * 60
BULK_DELETE_MAX_AGE_SECONDS: int = 14 * 24 * 60 * 60

# Managed scheduled event
EVENT_NAME_MAX_LENGTH: int = 100
EVENT_DURATION_SECONDS: int = 4 * 60 * 60
EVENT_DESCRIPTION: str = "Live stream schedule event."
DEFAULT_EVENT_NAME: str = os.getenv("DEFAULT_EVENT_NAME", "Stream Starting Soon")
CUSTOM_MODE_LABEL: str = os.getenv("CUSTOM_MODE_LABEL", "Custom Mode")
CUSTOM_TITLE_PREFIX: str = os.getenv("CUSTOM_TITLE_PREFIX", "Custom: ")

# External automation scripts
REFRESH_SCRIPT_PATH: str = (
    os.getenv("REFRESH_SCRIPT_PATH", "").strip() or os.getenv("AHK_SCRIPT_PATH_1", "").strip()
)
ENTER_CUSTOM_SCRIPT_PATH: str = os.getenv("ENTER_CUSTOM_SCRIPT_PATH", "").strip()
EXIT_CUSTOM_SCRIPT_PATH: str = os.getenv("EXIT_CUSTOM_SCRIPT_PATH", "").strip()
SKIP_SCRIPT_PATH: str = os.getenv("SKIP_SCRIPT_PATH", "").strip()
PLAY_FILE_SCRIPT_PATH: str = os.getenv("PLAY_FILE_SCRIPT_PATH", "").strip()
AUTOHOTKEY_EXE: str = os.getenv("AUTOHOTKEY_EXE", "").strip()
SCRIPT_TIMEOUT_SECONDS: float = _float("SCRIPT_TIMEOUT_SECONDS", 60.0)
# A line of script stderr starting with this marker is an application-level failure.
SCRIPT_ERROR_MARKER: str = "ERROR:"

# Voting
MODE_VOTE_SECONDS: float = _float("MODE_VOTE_SECONDS", 60.0)
SKIP_VOTE_SECONDS: float = _float("SKIP_VOTE_SECONDS", 30.0)
SKIP_VOTE_DECREMENT_SECONDS: float = _float("SKIP_VOTE_DECREMENT_SECONDS", 5.0)
SKIP_VOTE_FLOOR_SECONDS: float = _float("SKIP_VOTE_FLOOR_SECONDS", 10.0)
FILE_PLAY_VOTE_SECONDS: float = _float("FILE_PLAY_VOTE_SECONDS", 30.0)
VOTE_TICK_SECONDS: float = _float("VOTE_TICK_SECONDS", 10.0)
SKIP_BYPASS_PARTICIPANTS: int = 2

# Custom mode timers
STILL_WATCHING_INTERVAL_SECONDS: float = _float("STILL_WATCHING_INTERVAL_SECONDS", 2 * 60 * 60)
STILL_WATCHING_RESPONSE_SECONDS: float = _float("STILL_WATCHING_RESPONSE_SECONDS", 5 * 60)
TITLE_POLL_INTERVAL_SECONDS: float = _float("TITLE_POLL_INTERVAL_SECONDS", 30.0)
PLAYER_PROCESS_NAME: str = os.getenv("PLAYER_PROCESS_NAME", "vlc.exe")
PLAYER_TITLE_DECORATIONS: Tuple[str, ...] = (
    " - VLC media player",
    "VLC media player",
    " - MPC-HC",
    " - mpv",
)

# Downloads
DOWNLOAD_DIR: str = os.getenv("DOWNLOAD_DIR", "").strip()
MEDIA_DIR: str = os.getenv("MEDIA_DIR", "").strip() or DOWNLOAD_DIR
DOWNLOAD_TIMEOUT_SECONDS: int = int(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "600"))
DOWNLOAD_PROGRESS_INTERVAL_SECONDS: float = _float("DOWNLOAD_PROGRESS_INTERVAL_SECONDS", 5.0)
DOWNLOAD_MIN_FREE_MB: int = int(os.getenv("DOWNLOAD_MIN_FREE_MB", "500"))
SUBFOLDER_MAX_LENGTH: int = 64
MEDIA_PAGE_SIZE: int = 10
YTDLP_COOKIES_FILE: str = os.getenv("YTDLP_COOKIES_FILE", "").strip()

YTDL_BASE_OPTS: Dict[str, Any] = {
    "quiet": True,
    "no_warnings": True,
    "noplaylist": True,
    "retries": 3,
    "fragment_retries": 3,
    "format": "bestvideo[height<=1080]+bestaudio/best[height<=1080]/best",
    "merge_output_format": "mp4",
    "outtmpl": "%(title).80s [%(id)s].%(ext)s",
}

URL_RE: re.Pattern[str] = re.compile(r"https?://[^\s<>'\"()\[\]{}]+", re.IGNORECASE)

DIRECT_FILE_RE: re.Pattern[str] = re.compile(
    r"(?:https?://)?[^\s]+\.(?:mp4|mkv|webm|avi|mov|wmv|flv|mp3|m4a|wav|aac|ogg)"
    r"(?:\?[^#\s]*)?(?:#[^\s]*)?$",
    re.IGNORECASE,
)

VIDEO_EXTENSIONS: Tuple[str, ...] = (".mp4", ".mkv", ".webm", ".avi", ".mov", ".wmv", ".flv")
AUDIO_EXTENSIONS: Tuple[str, ...] = (".mp3", ".m4a", ".wav", ".aac", ".ogg")
MEDIA_EXTENSIONS: Tuple[str, ...] = VIDEO_EXTENSIONS + AUDIO_EXTENSIONS

# Schedule
SCHEDULE_FILE: str = os.getenv("SCHEDULE_FILE", "").strip()
SCHEDULE_TIMEZONE: str = os.getenv("SCHEDULE_TIMEZONE", "").strip()
MOVIE_PREFIX: str = "MOVIE:"

# Process
HEALTH_PORT: Optional[int] = _optional_int("HEALTH_PORT")
SHUTDOWN_GRACE_SECONDS: float = _float("SHUTDOWN_GRACE_SECONDS", 10.0)
