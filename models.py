"""
Data models shared by the orchestrator, voting engine and download queue.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from errors import DownloadCancelledError, FailureCategory


class Mode(Enum):
    """Who drives what is on air."""

    SCHEDULED = "scheduled"
    CUSTOM = "custom"


@dataclass
class ModeState:
    """Process-wide mode flag. Owned and mutated only by ModeOrchestrator."""

    mode: Mode = Mode.SCHEDULED
    skip_streak: int = 0


class VoteKind(Enum):
    MODE_TO_CUSTOM = "mode-to-custom"
    MODE_TO_SCHEDULED = "mode-to-scheduled"
    SKIP_ITEM = "skip-item"
    CONFIRM_FILE_PLAY = "confirm-file-play"


class VoteChoice(Enum):
    YES = "yes"
    NO = "no"


@dataclass(frozen=True)
class VoteOutcome:
    """Final result of one vote session."""

    passed: bool
    yes_count: int
    no_count: int
    reason: str


class DownloadStatus(Enum):
    """Lifecycle states for a single download job."""

    QUEUED = "queued"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DownloadEventType(Enum):
    PROGRESS = "progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CancellationToken:
    """Cooperative abort signal shared between the queue and one fetch.

    Safe to read from the yt-dlp worker thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DownloadCancelledError("Download cancelled")


@dataclass
class DownloadJob:
    """Runtime info for one queued or active download."""

    job_id: int
    url: str
    requester_id: int
    channel_id: Optional[int] = None
    subfolder: Optional[str] = None
    target_dir: Optional[str] = None
    status: DownloadStatus = DownloadStatus.QUEUED
    predicted_path: Optional[str] = None
    # The predicted file was already on disk before this job ran.
    predicted_preexisting: bool = False
    output_path: Optional[str] = None
    category: Optional[FailureCategory] = None
    error_message: Optional[str] = None
    created_ts: Optional[float] = None
    start_ts: Optional[float] = None
    end_ts: Optional[float] = None
    token: Optional[CancellationToken] = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            DownloadStatus.SUCCEEDED,
            DownloadStatus.FAILED,
            DownloadStatus.CANCELLED,
        )


@dataclass(frozen=True)
class DownloadEvent:
    type: DownloadEventType
    job: DownloadJob
    percent: Optional[float] = None
    eta: Optional[float] = None
    message: Optional[str] = None
    category: Optional[FailureCategory] = None
    path: Optional[str] = None


TERMINAL_EVENT_STATUSES = ("completed", "cancelled")


@dataclass
class ManagedEventHandle:
    """Weak reference to the externally hosted scheduled event."""

    event_id: int
    name: str
    status: str = "scheduled"
    start_ts: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EVENT_STATUSES


@dataclass(frozen=True)
class ScriptResult:
    stdout: str
    stderr: str
    returncode: int = 0


@dataclass(frozen=True)
class TransitionResult:
    """What a requested orchestrator action ended up doing."""

    ok: bool
    mode: Mode
    message: str
    warning: Optional[str] = None
    outcome: Optional[VoteOutcome] = None
