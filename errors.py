"""
Error types, failure classification and logging setup.
"""

import errno
import logging
from enum import Enum
from typing import Optional


def setup_logging(
    level: str = "INFO",
    format_string: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
) -> logging.Logger:
    """Configure root logging once and return module logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)
    # discord.py is chatty at INFO about gateway reconnects.
    logging.getLogger("discord").setLevel(max(numeric_level, logging.WARNING))
    return logging.getLogger(__name__)


class BotError(Exception):
    """Base class for errors raised by the bot's own components."""


class ConfigurationError(BotError):
    """A required path, directory or setting is missing or invalid."""


class ScriptError(BotError):
    """An external automation script could not be run successfully."""

    def __init__(self, message: str, script_path: Optional[str] = None):
        super().__init__(message)
        self.script_path = script_path


class ScriptNotConfiguredError(ScriptError, ConfigurationError):
    pass


class ScriptNotFoundError(ScriptError, ConfigurationError):
    pass


class ScriptExecutionError(ScriptError):
    def __init__(
        self,
        message: str,
        script_path: Optional[str] = None,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message, script_path=script_path)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class VoteError(BotError):
    pass


class VoteInProgressError(VoteError):
    """A vote of the same kind is already running for this context."""


class DownloadCancelledError(BotError):
    """Raised inside a fetch when its cancellation token has been aborted."""


class EventPublisherError(BotError):
    """The scheduled-event API call failed."""


class EventGoneError(EventPublisherError):
    """The managed scheduled event no longer exists."""


class FailureCategory(Enum):
    """Cause categories shown to users when a download fails."""

    UNSUPPORTED = "unsupported"
    UNAVAILABLE = "unavailable"
    NETWORK = "network"
    FILESYSTEM = "filesystem"
    UNKNOWN = "unknown"


_UNSUPPORTED_MARKERS = (
    "unsupported",
    "not a valid url",
    "invalid url",
    "no video formats found",
    "drm protected",
)
_UNAVAILABLE_MARKERS = (
    "video unavailable",
    "video not available",
    "private video",
    "this video is private",
    "has been removed",
    "members-only",
    "sign in to confirm",
    "http error 404",
    "http error 403",
    "http error 410",
    "not available in your country",
)
_NETWORK_MARKERS = (
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "temporary failure in name resolution",
    "name or service not known",
    "network is unreachable",
    "unable to download webpage",
    "http error 5",
    "ssl",
)
_FILESYSTEM_MARKERS = (
    "no space left",
    "disk",
    "permission denied",
    "read-only file system",
    "ffmpeg not found",
    "ffprobe",
    "ffmpeg is not installed",
    "file name too long",
)


class ErrorManager:
    """Convert internal exceptions to compact user-facing messages."""

    def classify(self, error: BaseException) -> FailureCategory:
        if isinstance(error, (PermissionError, FileNotFoundError, IsADirectoryError)):
            return FailureCategory.FILESYSTEM
        if isinstance(error, OSError) and error.errno in (errno.ENOSPC, errno.EACCES, errno.EROFS):
            return FailureCategory.FILESYSTEM
        if isinstance(error, (TimeoutError, ConnectionError)):
            return FailureCategory.NETWORK

        msg = str(error).lower()
        # Filesystem first: a missing ffmpeg can be reported next to the URL text.
        if any(marker in msg for marker in _FILESYSTEM_MARKERS):
            return FailureCategory.FILESYSTEM
        if any(marker in msg for marker in _UNSUPPORTED_MARKERS):
            return FailureCategory.UNSUPPORTED
        if any(marker in msg for marker in _UNAVAILABLE_MARKERS):
            return FailureCategory.UNAVAILABLE
        if any(marker in msg for marker in _NETWORK_MARKERS):
            return FailureCategory.NETWORK
        return FailureCategory.UNKNOWN

    def to_user_message(self, error: BaseException, url: Optional[str] = None) -> str:
        category = self.classify(error)

        if category is FailureCategory.UNSUPPORTED:
            return (
                "❌ **Unsupported link.**\n"
                "Send a direct link to a single video on a supported site."
            )

        if category is FailureCategory.UNAVAILABLE:
            return (
                "❌ **Video unavailable.**\n"
                "It may be private, removed, or region/age restricted."
            )

        if category is FailureCategory.NETWORK:
            return (
                "⏱️ **Network problem while downloading.**\n"
                "The source timed out or refused the connection. Try again later."
            )

        if category is FailureCategory.FILESYSTEM:
            return (
                "💾 **Could not write the file on the host.**\n"
                "Disk space, permissions or a missing tool (ffmpeg). Check the bot logs."
            )

        details = str(error).replace("`", "'")[:350]
        return (
            "⚠️ **Download failed.**\n"
            f"`{details}`"
        )

    def script_failure_message(self, error: BaseException, action: str) -> str:
        if isinstance(error, ScriptNotConfiguredError):
            return f"⚠️ Cannot {action}: the script path is not configured."
        if isinstance(error, ScriptNotFoundError):
            return f"⚠️ Cannot {action}: the script file was not found on the host."
        if isinstance(error, ScriptExecutionError):
            return f"❌ Failed to {action}: the automation script reported an error. Check console logs."
        return f"❌ Failed to {action}. Check console logs."


error_manager = ErrorManager()
