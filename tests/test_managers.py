"""
Unit tests for the sequential download queue.
"""

import asyncio
import os

import pytest

from errors import ConfigurationError, DownloadCancelledError, FailureCategory
from managers import DownloadManager
from models import DownloadEventType, DownloadStatus


class _FakeFetcher:
    """Writes a .part file, then waits on a per-URL gate before finishing."""

    def __init__(self, ignore_token=False):
        self.ignore_token = ignore_token
        self.started = []
        self.gates = {}
        self.failures = {}
        self.active = 0
        self.max_active = 0
        self.predict_error = None

    def gate(self, url):
        return self.gates.setdefault(url, asyncio.Event())

    async def predict_output_path(self, url, target_dir):
        if self.predict_error is not None:
            raise self.predict_error
        return os.path.join(target_dir, url.rsplit("/", 1)[-1] + ".mp4")

    async def fetch(self, url, target_dir, progress=None, token=None):
        self.started.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        path = os.path.join(target_dir, url.rsplit("/", 1)[-1] + ".mp4")
        try:
            with open(path + ".part", "wb") as handle:
                handle.write(b"partial")
            if progress is not None:
                progress(50.0, 3)
            gate = self.gate(url)
            while not gate.is_set():
                if token is not None and token.cancelled and not self.ignore_token:
                    raise DownloadCancelledError("Download cancelled")
                await asyncio.sleep(0.005)
            if url in self.failures:
                raise self.failures[url]
            os.replace(path + ".part", path)
            return path
        finally:
            self.active -= 1


def _manager(tmp_path, fetcher=None):
    events = []
    manager = DownloadManager(
        fetcher=fetcher or _FakeFetcher(),
        download_root=str(tmp_path),
        on_event=events.append,
        progress_interval=0,
        min_free_mb=0,
    )
    return manager, events


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _terminal(events, job_id):
    return [event for event in events if event.job.job_id == job_id and event.type is not DownloadEventType.PROGRESS]


def test_jobs_run_fifo_one_at_a_time(tmp_path):
    async def scenario():
        manager, events = _manager(tmp_path)
        fetcher = manager.fetcher
        first, _ = await manager.enqueue("https://example.com/a", requester_id=1)
        second, _ = await manager.enqueue("https://example.com/b", requester_id=2)
        third, _ = await manager.enqueue("https://example.com/c", requester_id=1)

        await _wait_for(lambda: fetcher.started == ["https://example.com/a"])
        assert manager.position(first.job_id) == 0
        assert manager.position(second.job_id) == 1
        assert manager.position(third.job_id) == 2

        for url in ("https://example.com/a", "https://example.com/b", "https://example.com/c"):
            fetcher.gate(url).set()
        await _wait_for(manager.is_idle)
        await manager.stop(timeout=1)
        return fetcher, events, (first, second, third)

    fetcher, events, jobs = asyncio.run(scenario())
    assert fetcher.started == ["https://example.com/a", "https://example.com/b", "https://example.com/c"]
    assert fetcher.max_active == 1
    for job in jobs:
        assert job.status is DownloadStatus.SUCCEEDED
        assert os.path.exists(job.output_path)
        assert [event.type for event in _terminal(events, job.job_id)] == [DownloadEventType.SUCCEEDED]


def test_cancel_requester_aborts_active_and_drops_their_queued_jobs(tmp_path):
    async def scenario():
        manager, events = _manager(tmp_path)
        fetcher = manager.fetcher
        job_a, _ = await manager.enqueue("https://example.com/a", requester_id=1)
        job_b, _ = await manager.enqueue("https://example.com/b", requester_id=2)
        job_a2, _ = await manager.enqueue("https://example.com/a2", requester_id=1)
        await _wait_for(lambda: manager.active_job is job_a)

        count = manager.cancel_requester(1)
        queued_after_cancel = [job.job_id for job in manager.queued_jobs()]

        await _wait_for(lambda: manager.active_job is job_b)
        fetcher.gate("https://example.com/b").set()
        await _wait_for(manager.is_idle)
        await manager.stop(timeout=1)
        return count, queued_after_cancel, events, (job_a, job_b, job_a2), fetcher

    count, queued, events, (job_a, job_b, job_a2), fetcher = asyncio.run(scenario())
    assert count == 2
    assert queued == [job_b.job_id]
    assert job_a.status is DownloadStatus.CANCELLED
    assert job_a2.status is DownloadStatus.CANCELLED
    assert job_b.status is DownloadStatus.SUCCEEDED
    assert "https://example.com/a2" not in fetcher.started
    assert not os.path.exists(os.path.join(str(tmp_path), "a.mp4.part"))
    assert [event.type for event in _terminal(events, job_a.job_id)] == [DownloadEventType.CANCELLED]


def test_cancel_all_clears_queue(tmp_path):
    async def scenario():
        manager, _ = _manager(tmp_path)
        job_a, _ = await manager.enqueue("https://example.com/a", requester_id=1)
        job_b, _ = await manager.enqueue("https://example.com/b", requester_id=2)
        await _wait_for(lambda: manager.active_job is job_a)
        count = manager.cancel_all()
        await _wait_for(manager.is_idle)
        await manager.stop(timeout=1)
        return count, job_a, job_b

    count, job_a, job_b = asyncio.run(scenario())
    assert count == 2
    assert job_a.status is DownloadStatus.CANCELLED
    assert job_b.status is DownloadStatus.CANCELLED


def test_clean_return_after_abort_is_still_cancelled(tmp_path):
    async def scenario():
        fetcher = _FakeFetcher(ignore_token=True)
        manager, events = _manager(tmp_path, fetcher)
        job, _ = await manager.enqueue("https://example.com/late", requester_id=1)
        await _wait_for(lambda: fetcher.started)
        manager.cancel(job.job_id)
        fetcher.gate("https://example.com/late").set()
        await _wait_for(manager.is_idle)
        await manager.stop(timeout=1)
        return job, events

    job, events = asyncio.run(scenario())
    assert job.status is DownloadStatus.CANCELLED
    assert not os.path.exists(os.path.join(str(tmp_path), "late.mp4"))
    assert [event.type for event in _terminal(events, job.job_id)] == [DownloadEventType.CANCELLED]


@pytest.mark.parametrize(
    "error, category",
    [
        (Exception("ERROR: Unsupported URL: https://example.com/x"), FailureCategory.UNSUPPORTED),
        (Exception("ERROR: Private video. Sign in if you've been granted access"), FailureCategory.UNAVAILABLE),
        (TimeoutError("read timed out"), FailureCategory.NETWORK),
        (OSError(28, "No space left on device"), FailureCategory.FILESYSTEM),
        (RuntimeError("something odd"), FailureCategory.UNKNOWN),
    ],
)
def test_failures_are_classified(tmp_path, error, category):
    async def scenario():
        fetcher = _FakeFetcher()
        fetcher.failures["https://example.com/x"] = error
        fetcher.gate("https://example.com/x").set()
        manager, events = _manager(tmp_path, fetcher)
        job, _ = await manager.enqueue("https://example.com/x", requester_id=1)
        await _wait_for(lambda: job.is_terminal)
        await manager.stop(timeout=1)
        return job, events

    job, events = asyncio.run(scenario())
    assert job.status is DownloadStatus.FAILED
    assert job.category is category
    failed = _terminal(events, job.job_id)
    assert len(failed) == 1
    assert failed[0].category is category
    assert failed[0].message


def test_invalid_url_and_missing_root_are_rejected(tmp_path):
    async def scenario():
        manager, _ = _manager(tmp_path)
        with pytest.raises(ValueError):
            await manager.enqueue("not a url", requester_id=1)

        missing = DownloadManager(fetcher=_FakeFetcher(), download_root=str(tmp_path / "missing"))
        with pytest.raises(ConfigurationError):
            await missing.enqueue("https://example.com/a", requester_id=1)
        return manager

    manager = asyncio.run(scenario())
    assert manager.is_idle()
    assert manager.task_counter == 0


def test_bad_subfolder_falls_back_to_root_with_notice(tmp_path):
    async def scenario():
        manager, _ = _manager(tmp_path)
        job, notice = await manager.enqueue("https://example.com/a", requester_id=1, subfolder="../escape")
        manager.cancel_all()
        await manager.stop(timeout=1)
        return job, notice

    job, notice = asyncio.run(scenario())
    assert job.target_dir == str(tmp_path)
    assert notice


def test_prediction_failure_uses_fallback_path(tmp_path):
    async def scenario():
        fetcher = _FakeFetcher()
        fetcher.predict_error = RuntimeError("metadata unavailable")
        manager, _ = _manager(tmp_path, fetcher)
        job, _ = await manager.enqueue("https://example.com/watch?v=abc", requester_id=9)
        await _wait_for(lambda: job.predicted_path is not None)
        manager.cancel_all()
        await _wait_for(manager.is_idle)
        await manager.stop(timeout=1)
        return job

    job = asyncio.run(scenario())
    assert job.predicted_path == os.path.join(str(tmp_path), "abc_9.mp4")
    assert job.status is DownloadStatus.CANCELLED


def test_low_disk_space_fails_before_fetch(tmp_path):
    async def scenario():
        manager, events = _manager(tmp_path)
        manager.min_free_mb = 10 ** 12
        job, _ = await manager.enqueue("https://example.com/a", requester_id=1)
        await _wait_for(lambda: job.is_terminal)
        await manager.stop(timeout=1)
        return manager, job

    manager, job = asyncio.run(scenario())
    assert job.status is DownloadStatus.FAILED
    assert job.category is FailureCategory.FILESYSTEM
    assert manager.fetcher.started == []


def test_cancel_keeps_file_that_existed_before_the_job(tmp_path):
    existing = tmp_path / "abc.mp4"
    existing.write_bytes(b"finished earlier")

    async def scenario():
        manager, events = _manager(tmp_path)
        job, _ = await manager.enqueue("https://example.com/abc", requester_id=2)
        await _wait_for(lambda: manager.fetcher.started)
        manager.cancel_requester(2)
        await _wait_for(manager.is_idle)
        await manager.stop(timeout=1)
        return job, events

    job, events = asyncio.run(scenario())
    assert job.status is DownloadStatus.CANCELLED
    assert job.predicted_preexisting
    assert existing.read_bytes() == b"finished earlier"
    assert not (tmp_path / "abc.mp4.part").exists()
    assert [event.type for event in _terminal(events, job.job_id)] == [DownloadEventType.CANCELLED]


def test_cancel_queued_job_by_id(tmp_path):
    async def scenario():
        manager, events = _manager(tmp_path)
        fetcher = manager.fetcher
        active, _ = await manager.enqueue("https://example.com/a", requester_id=1)
        queued, _ = await manager.enqueue("https://example.com/b", requester_id=2)
        await _wait_for(lambda: manager.active_job is active)

        assert manager.cancel(queued.job_id)
        assert manager.position(queued.job_id) is None
        assert not manager.cancel(queued.job_id)

        fetcher.gate("https://example.com/a").set()
        await _wait_for(manager.is_idle)
        await manager.stop(timeout=1)
        return active, queued, events, fetcher

    active, queued, events, fetcher = asyncio.run(scenario())
    assert active.status is DownloadStatus.SUCCEEDED
    assert queued.status is DownloadStatus.CANCELLED
    assert "https://example.com/b" not in fetcher.started
    assert [event.type for event in _terminal(events, queued.job_id)] == [DownloadEventType.CANCELLED]


def test_every_dropped_queued_job_gets_a_cancelled_event(tmp_path):
    async def scenario():
        manager, events = _manager(tmp_path)
        active, _ = await manager.enqueue("https://example.com/a", requester_id=1)
        mine, _ = await manager.enqueue("https://example.com/b", requester_id=2)
        others = [
            (await manager.enqueue(f"https://example.com/c{index}", requester_id=3))[0] for index in range(2)
        ]
        await _wait_for(lambda: manager.active_job is active)

        manager.cancel_requester(2)
        manager.cancel_all()
        await _wait_for(manager.is_idle)
        await manager.stop(timeout=1)
        return events, [active, mine] + others

    events, jobs = asyncio.run(scenario())
    for job in jobs:
        assert job.status is DownloadStatus.CANCELLED
        assert [event.type for event in _terminal(events, job.job_id)] == [DownloadEventType.CANCELLED]
