"""
Sequential download queue: one active yt-dlp job at a time, FIFO behind it.
"""

import asyncio
import errno
import logging
import os
import time
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Set, Tuple

from config import DOWNLOAD_DIR, DOWNLOAD_MIN_FREE_MB, DOWNLOAD_PROGRESS_INTERVAL_SECONDS
from errors import ConfigurationError, DownloadCancelledError, FailureCategory, error_manager
from fetcher import VideoFetchClient
from models import (
    CancellationToken,
    DownloadEvent,
    DownloadEventType,
    DownloadJob,
    DownloadStatus,
)
from utils import (
    cleanup_artifacts,
    has_enough_disk_space,
    maybe_await,
    resolve_target_dir,
    sanitize_filename,
    source_identifier,
    strip_tracking_params,
    validate_url_input,
)

logger = logging.getLogger(__name__)

EventListener = Callable[[DownloadEvent], Any]


class DownloadManager:
    """Queue-based video downloader with cooperative cancellation."""

    def __init__(
        self,
        fetcher: Optional[VideoFetchClient] = None,
        download_root: str = DOWNLOAD_DIR,
        on_event: Optional[EventListener] = None,
        progress_interval: float = DOWNLOAD_PROGRESS_INTERVAL_SECONDS,
        min_free_mb: int = DOWNLOAD_MIN_FREE_MB,
    ):
        self.fetcher = fetcher or VideoFetchClient()
        self.download_root = download_root
        self.on_event = on_event
        self.progress_interval = progress_interval
        self.min_free_mb = min_free_mb

        self.task_counter = 0
        self.active_job: Optional[DownloadJob] = None
        self._queue: Deque[DownloadJob] = deque()
        self._wakeup: Optional[asyncio.Event] = None
        self._worker: Optional[asyncio.Task] = None
        self._event_tasks: Set[asyncio.Task] = set()
        self._stopping = False

    async def enqueue(
        self,
        url: str,
        requester_id: int,
        channel_id: Optional[int] = None,
        subfolder: Optional[str] = None,
    ) -> Tuple[DownloadJob, Optional[str]]:
        """
        Queue a download and return the job plus an optional notice for the
        requester (e.g. a subfolder fallback).

        Raises ValueError for a malformed URL and ConfigurationError when the
        download directory is unusable; nothing is queued in either case.
        """
        valid, reason = validate_url_input(url)
        if not valid:
            raise ValueError(reason)
        if not self.download_root or not os.path.isdir(self.download_root):
            raise ConfigurationError(f"Download directory is not configured or missing: {self.download_root!r}")
        if self._stopping:
            raise RuntimeError("Download manager is shutting down")

        target_dir, notice = resolve_target_dir(self.download_root, subfolder)
        if notice:
            logger.info("Subfolder %r for user=%s: %s", subfolder, requester_id, notice)

        self.task_counter += 1
        job = DownloadJob(
            job_id=self.task_counter,
            url=strip_tracking_params(url),
            requester_id=requester_id,
            channel_id=channel_id,
            subfolder=subfolder,
            target_dir=target_dir,
            created_ts=time.time(),
        )
        self._queue.append(job)
        logger.info("Queued download #%s for user=%s: %s", job.job_id, requester_id, job.url)
        self._ensure_worker()
        return job, notice

    def _ensure_worker(self) -> None:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._worker_loop())
        self._wakeup.set()

    async def _worker_loop(self) -> None:
        """Consume queued jobs one at a time until stopped."""
        while not self._stopping:
            if not self._queue:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            job = self._queue.popleft()
            try:
                await self._run_job(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected worker error (job=%s)", job.job_id)
            finally:
                self.active_job = None

    async def _run_job(self, job: DownloadJob) -> None:
        job.status = DownloadStatus.ACTIVE
        job.start_ts = time.time()
        job.token = CancellationToken()
        self.active_job = job

        job.predicted_path = await self._predict_path(job)
        job.predicted_preexisting = os.path.exists(job.predicted_path)
        logger.info("Download #%s started; expected output %s", job.job_id, job.predicted_path)

        last_progress = {"ts": 0.0}

        def on_progress(percent: Optional[float], eta: Optional[float]) -> None:
            if job.is_terminal or job.token.cancelled:
                return
            now = time.monotonic()
            finished = percent is not None and percent >= 100.0
            if last_progress["ts"] and now - last_progress["ts"] < self.progress_interval and not finished:
                return
            last_progress["ts"] = now
            task = asyncio.ensure_future(self._emit_progress(job, percent, eta))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_tasks.discard)

        if job.token.cancelled:
            await self._finish_cancelled(job)
            return
        if not has_enough_disk_space(job.target_dir, self.min_free_mb):
            error = OSError(errno.ENOSPC, f"Less than {self.min_free_mb} MB free in {job.target_dir}")
            await self._finish_failed(job, error)
            return

        try:
            output_path = await self.fetcher.fetch(
                job.url,
                job.target_dir,
                progress=on_progress,
                token=job.token,
            )
        except (DownloadCancelledError, asyncio.CancelledError) as error:
            await self._finish_cancelled(job)
            if isinstance(error, asyncio.CancelledError):
                raise
            return
        except Exception as error:
            if job.token.cancelled:
                await self._finish_cancelled(job)
                return
            await self._finish_failed(job, error)
            return

        if job.token.cancelled:
            # The fetch finished after the abort fired; the artifact is unwanted.
            job.output_path = output_path
            await self._finish_cancelled(job)
            return

        job.status = DownloadStatus.SUCCEEDED
        job.end_ts = time.time()
        job.output_path = output_path or job.predicted_path
        logger.info("Download #%s finished: %s", job.job_id, job.output_path)
        await self._emit(DownloadEvent(DownloadEventType.SUCCEEDED, job, percent=100.0, path=job.output_path))

    async def _predict_path(self, job: DownloadJob) -> str:
        try:
            return await self.fetcher.predict_output_path(job.url, job.target_dir)
        except Exception as error:
            fallback = sanitize_filename(f"{source_identifier(job.url)}_{job.requester_id}") + ".mp4"
            logger.warning(
                "Could not predict output path for #%s (%s); cleanup will use %s",
                job.job_id, error, fallback,
            )
            return os.path.join(job.target_dir, fallback)

    async def _finish_cancelled(self, job: DownloadJob) -> None:
        job.status = DownloadStatus.CANCELLED
        job.end_ts = time.time()
        removed: List[str] = []
        for path in {job.predicted_path, job.output_path}:
            keep_final = job.predicted_preexisting and path == job.predicted_path
            try:
                removed.extend(cleanup_artifacts(path, keep_final=keep_final))
            except OSError:
                logger.warning("Cleanup failed for %s", path, exc_info=True)
        logger.info("Download #%s cancelled; removed %s file(s)", job.job_id, len(removed))
        await self._emit(
            DownloadEvent(
                DownloadEventType.CANCELLED,
                job,
                message=f"Removed {len(removed)} partial file(s)." if removed else None,
            )
        )

    async def _finish_failed(self, job: DownloadJob, error: Exception) -> None:
        job.status = DownloadStatus.FAILED
        job.end_ts = time.time()
        job.category = error_manager.classify(error)
        job.error_message = str(error)
        if job.category is FailureCategory.UNKNOWN:
            logger.error("Download #%s failed for user=%s url=%s", job.job_id, job.requester_id, job.url, exc_info=error)
        else:
            logger.warning("Download #%s failed (%s): %s", job.job_id, job.category.value, error)
        await self._emit(
            DownloadEvent(
                DownloadEventType.FAILED,
                job,
                message=error_manager.to_user_message(error, url=job.url),
                category=job.category,
            )
        )

    async def _emit_progress(self, job: DownloadJob, percent: Optional[float], eta: Optional[float]) -> None:
        if job.is_terminal:
            return
        await self._emit(DownloadEvent(DownloadEventType.PROGRESS, job, percent=percent, eta=eta))

    async def _emit(self, event: DownloadEvent) -> None:
        if self.on_event is None:
            return
        try:
            await maybe_await(self.on_event(event))
        except Exception:
            logger.exception("Download event listener failed (job=%s type=%s)", event.job.job_id, event.type.value)

    def _drop_queued(self, job: DownloadJob) -> None:
        self._queue.remove(job)
        job.status = DownloadStatus.CANCELLED
        job.end_ts = time.time()
        task = asyncio.ensure_future(self._emit(DownloadEvent(DownloadEventType.CANCELLED, job)))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    def cancel(self, job_id: int) -> bool:
        """Cancel one job, queued or active."""
        if self.active_job is not None and self.active_job.job_id == job_id:
            self.active_job.token.cancel()
            logger.info("Abort requested for active download #%s", job_id)
            return True
        for job in list(self._queue):
            if job.job_id == job_id:
                self._drop_queued(job)
                logger.info("Removed queued download #%s", job_id)
                return True
        return False

    def cancel_requester(self, requester_id: int) -> int:
        """Drop every queued job of a requester and abort the active one if it is theirs."""
        removed = [job for job in self._queue if job.requester_id == requester_id]
        for job in removed:
            self._drop_queued(job)

        count = len(removed)
        active = self.active_job
        if active is not None and active.requester_id == requester_id and not active.token.cancelled:
            active.token.cancel()
            count += 1
        logger.info("Cancelled %s download(s) for user=%s", count, requester_id)
        return count

    def cancel_all(self) -> int:
        """Abort the active job and clear the queue."""
        count = len(self._queue)
        for job in list(self._queue):
            self._drop_queued(job)

        active = self.active_job
        if active is not None and not active.token.cancelled:
            active.token.cancel()
            count += 1
        logger.info("Cancelled all downloads (%s)", count)
        return count

    def queued_jobs(self) -> List[DownloadJob]:
        return list(self._queue)

    def position(self, job_id: int) -> Optional[int]:
        """1-based position among queued jobs; 0 when it is the active job."""
        if self.active_job is not None and self.active_job.job_id == job_id:
            return 0
        for index, job in enumerate(self._queue, start=1):
            if job.job_id == job_id:
                return index
        return None

    def get_queue_size(self) -> int:
        return len(self._queue)

    def is_idle(self) -> bool:
        return self.active_job is None and not self._queue

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Abort the active download, drop the queue and stop the worker."""
        self.cancel_all()
        self._stopping = True
        if self._wakeup is not None:
            self._wakeup.set()
        if self._worker is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._worker), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Download worker did not stop in %.1fs; cancelling", timeout)
                self._worker.cancel()
            except Exception:
                logger.exception("Worker stop failed")
        if self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)
