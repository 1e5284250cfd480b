"""
Tests for the job registry: lifecycle, downloads, cleanup and eviction
"""
import asyncio
import signal

import pytest

from conftest import wait_until
from fake_extractor import ARTIFACT_BYTES
from mediafetch.core.errors import (
    ArtifactGone,
    CapacityExceeded,
    JobFailed,
    JobNotFound,
    JobNotReady,
    ValidationError,
)
from mediafetch.models.jobs import JobStatus, OutputFormat
from mediafetch.services.job_registry import STARTING_TEXT


async def finish(registry, job_id):
    return await asyncio.wait_for(registry.wait_terminal(job_id), 10)


async def read_all(lease):
    return b"".join([chunk async for chunk in lease.iter_chunks()])


class TestCreate:
    """Test job creation and validation"""

    @pytest.mark.asyncio
    async def test_new_job_is_running_with_placeholder(self, registry):
        """Test the state of a freshly created job"""
        job_id = registry.create("http://example.test/video", "mp3")

        info = registry.get(job_id)
        assert info.status is JobStatus.RUNNING
        assert info.progress_text == STARTING_TEXT
        assert info.format is OutputFormat.MP3
        assert info.error_text is None

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, make_registry):
        """Test that every create returns a new id"""
        registry = make_registry(max_concurrent_jobs=50)
        ids = [registry.create("http://example.test/video", "mp4") for _ in range(20)]
        assert len(set(ids)) == 20

    @pytest.mark.asyncio
    async def test_each_job_gets_its_own_workspace(self, registry, workspace_root):
        """Test that workspaces are never shared"""
        registry.create("http://example.test/hang", "mp3")
        registry.create("http://example.test/hang", "mp3")
        workspaces = list(workspace_root.iterdir())
        assert len(workspaces) == 2
        assert workspaces[0] != workspaces[1]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("locator,fmt,field", [
        ("", "mp3", "url"),
        ("   ", "mp3", "url"),
        (None, "mp3", "url"),
        ("ftp://example.test/video", "mp3", "url"),
        ("http://example.test/video", "wav", "format"),
        ("http://example.test/video", "", "format"),
    ])
    async def test_invalid_input_is_rejected_before_allocation(
        self, registry, workspace_root, locator, fmt, field
    ):
        """Test that bad input raises ValidationError and allocates nothing"""
        with pytest.raises(ValidationError) as exc_info:
            registry.create(locator, fmt)

        assert exc_info.value.field == field
        assert len(registry) == 0
        assert not workspace_root.exists() or not any(workspace_root.iterdir())

    @pytest.mark.asyncio
    async def test_format_is_case_insensitive(self, registry):
        """Test that MP4 is accepted as mp4"""
        job_id = registry.create("https://example.test/video", "MP4")
        assert registry.get(job_id).format is OutputFormat.MP4

    @pytest.mark.asyncio
    async def test_quality_only_applies_to_video(self, registry):
        """Test that quality is kept for mp4 and dropped for mp3"""
        audio = registry.create("http://example.test/video", "mp3", 720)
        video = registry.create("http://example.test/video", "mp4", 720)
        assert registry.get(audio).quality is None
        assert registry.get(video).quality == 720

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quality", [0, -1, "abc", "0"])
    async def test_unusable_quality_is_ignored(self, registry, quality):
        """Test that a non-positive or non-numeric quality falls back to the default"""
        audio = registry.create("http://example.test/video", "mp3", quality)
        video = registry.create("http://example.test/video", "mp4", quality)
        assert registry.get(audio).quality is None
        assert registry.get(video).quality is None

    @pytest.mark.asyncio
    async def test_admission_limit(self, make_registry, workspace_root):
        """Test that creation beyond the limit fails before allocation"""
        registry = make_registry(max_concurrent_jobs=1)
        registry.create("http://example.test/hang", "mp3")

        with pytest.raises(CapacityExceeded):
            registry.create("http://example.test/hang", "mp3")
        assert len(list(workspace_root.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_admission_slot_frees_when_job_finishes(self, make_registry):
        """Test that finished jobs no longer count against the limit"""
        registry = make_registry(max_concurrent_jobs=1)
        first = registry.create("http://example.test/video", "mp3")
        await finish(registry, first)

        second = registry.create("http://example.test/video", "mp3")
        assert registry.get(second).status is JobStatus.RUNNING


class TestLifecycle:
    """Test progress updates and terminal transitions"""

    @pytest.mark.asyncio
    async def test_successful_extraction(self, registry):
        """Test a clean exit with an artifact"""
        job_id = registry.create("http://example.test/video", "mp3")

        info = await finish(registry, job_id)
        assert info.status is JobStatus.DONE
        assert info.error_text is None
        assert info.progress_text != STARTING_TEXT

    @pytest.mark.asyncio
    async def test_non_zero_exit_fails_with_diagnostic(self, registry):
        """Test that a failing extractor records its diagnostic"""
        job_id = registry.create("http://example.test/fail", "mp3")

        info = await finish(registry, job_id)
        assert info.status is JobStatus.FAILED
        assert info.error_text == "network error"

    @pytest.mark.asyncio
    async def test_missing_artifact_fails_even_on_clean_exit(self, registry):
        """Test that exit code 0 without output still fails"""
        job_id = registry.create("http://example.test/noartifact", "mp4")

        info = await finish(registry, job_id)
        assert info.status is JobStatus.FAILED
        assert "no output file" in info.error_text

    @pytest.mark.asyncio
    async def test_error_text_is_bounded(self, make_registry):
        """Test that only the tail of the diagnostic is kept"""
        registry = make_registry(error_text_max_chars=10)
        job_id = registry.create("http://example.test/fail", "mp3")

        info = await finish(registry, job_id)
        assert info.status is JobStatus.FAILED
        assert info.error_text == "work error"

    @pytest.mark.asyncio
    async def test_terminal_state_is_sticky(self, registry):
        """Test that late callbacks never change a finished job"""
        job_id = registry.create("http://example.test/video", "mp3")
        done = await finish(registry, job_id)

        entry = registry._entries[job_id]
        registry._on_line(entry, "late output")
        registry._on_exit(entry, 1, "late failure")

        info = registry.get(job_id)
        assert info.status is JobStatus.DONE
        assert info.progress_text == done.progress_text
        assert info.error_text is None

    @pytest.mark.asyncio
    async def test_progress_text_follows_output(self, registry):
        """Test that the latest output line becomes the progress text"""
        job_id = registry.create("http://example.test/hang", "mp3")

        await wait_until(lambda: registry.get(job_id).progress_text != STARTING_TEXT)
        assert registry.get(job_id).progress_text.startswith("[download]")

    @pytest.mark.asyncio
    async def test_unknown_job(self, registry):
        """Test lookup of an id that was never issued"""
        with pytest.raises(JobNotFound):
            registry.get("does-not-exist")


class TestDownload:
    """Test the download path"""

    @pytest.mark.asyncio
    async def test_running_job_is_not_ready(self, registry):
        """Test that a running job yields no bytes"""
        job_id = registry.create("http://example.test/hang", "mp3")

        with pytest.raises(JobNotReady):
            registry.open_download(job_id)

    @pytest.mark.asyncio
    async def test_failed_job_reports_diagnostic(self, registry):
        """Test that downloading a failed job carries its diagnostic"""
        job_id = registry.create("http://example.test/fail", "mp3")
        await finish(registry, job_id)

        with pytest.raises(JobFailed) as exc_info:
            registry.open_download(job_id)
        assert exc_info.value.message == "network error"

    @pytest.mark.asyncio
    async def test_unknown_job_is_not_found(self, registry):
        """Test downloading an unknown id"""
        with pytest.raises(JobNotFound):
            registry.open_download("does-not-exist")

    @pytest.mark.asyncio
    async def test_reclaimed_artifact_is_gone(self, registry):
        """Test a finished job whose artifact disappeared"""
        job_id = registry.create("http://example.test/video", "mp3")
        await finish(registry, job_id)
        (registry._entries[job_id].job.artifact_path).unlink()

        with pytest.raises(ArtifactGone):
            registry.open_download(job_id)

    @pytest.mark.asyncio
    async def test_streams_artifact_bytes_then_releases_job(self, registry, workspace_root):
        """Test a full download followed by cleanup"""
        job_id = registry.create("http://example.test/video", "mp3")
        await finish(registry, job_id)

        lease = registry.open_download(job_id)
        assert lease.content_type == "audio/mpeg"
        assert lease.filename == "download.mp3"
        assert lease.size == len(ARTIFACT_BYTES)

        assert await read_all(lease) == ARTIFACT_BYTES
        assert lease.closed

        await wait_until(lambda: job_id not in registry)
        assert not any(workspace_root.iterdir())

    @pytest.mark.asyncio
    async def test_video_content_type(self, registry):
        """Test the content type of an mp4 artifact"""
        job_id = registry.create("http://example.test/video", "mp4")
        await finish(registry, job_id)

        lease = registry.open_download(job_id)
        assert lease.content_type == "video/mp4"
        lease.close()

    @pytest.mark.asyncio
    async def test_abandoned_download_cleans_up_once(self, registry, workspace_root):
        """Test that a download closed mid-transfer releases the job exactly once"""
        job_id = registry.create("http://example.test/video", "mp3")
        await finish(registry, job_id)

        lease = registry.open_download(job_id)
        chunks = lease.iter_chunks()
        assert await chunks.__anext__()
        await chunks.aclose()  # caller went away mid-transfer

        await wait_until(lambda: job_id not in registry)
        assert await registry.cleanup(job_id) is False
        assert await registry.sweep() == []
        lease.close()
        assert not any(workspace_root.iterdir())

    @pytest.mark.asyncio
    async def test_release_waits_for_last_download(self, registry):
        """Test that concurrent downloads keep the job until the last one ends"""
        job_id = registry.create("http://example.test/video", "mp3")
        await finish(registry, job_id)

        first = registry.open_download(job_id)
        second = registry.open_download(job_id)
        first.close()
        await asyncio.sleep(0.05)
        assert job_id in registry

        assert await read_all(second) == ARTIFACT_BYTES
        await wait_until(lambda: job_id not in registry)


class TestCleanup:
    """Test idempotent release"""

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, registry, workspace_root):
        """Test that concurrent and repeated cleanup does the work once"""
        job_id = registry.create("http://example.test/video", "mp3")
        await finish(registry, job_id)

        results = await asyncio.gather(*(registry.cleanup(job_id) for _ in range(5)))
        assert results.count(True) == 1
        assert job_id not in registry
        assert not any(workspace_root.iterdir())

        assert await registry.cleanup(job_id) is False
        with pytest.raises(JobNotFound):
            registry.get(job_id)

    @pytest.mark.asyncio
    async def test_cancel_kills_process_and_removes_workspace(self, registry, workspace_root):
        """Test that cancelling a running job signals the process and drops the workspace"""
        job_id = registry.create("http://example.test/hang", "mp3")
        handle = registry._entries[job_id].handle
        await wait_until(lambda: handle.pid is not None)

        assert await asyncio.wait_for(registry.cancel(job_id), 15) is True
        assert handle.returncode == -signal.SIGKILL
        assert job_id not in registry
        assert not any(workspace_root.iterdir())

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, registry):
        """Test cancelling an id that does not exist"""
        with pytest.raises(JobNotFound):
            await registry.cancel("does-not-exist")

    @pytest.mark.asyncio
    async def test_waiters_see_released_job_as_not_found(self, registry):
        """Test that waiting on a cancelled job ends with JobNotFound"""
        job_id = registry.create("http://example.test/hang", "mp3")
        waiter = asyncio.ensure_future(registry.wait_terminal(job_id))
        await asyncio.sleep(0)

        await registry.cancel(job_id)
        with pytest.raises(JobNotFound):
            await asyncio.wait_for(waiter, 5)

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, registry, workspace_root):
        """Test that shutdown releases all jobs"""
        registry.create("http://example.test/hang", "mp3")
        registry.create("http://example.test/video", "mp4")

        await registry.stop()
        assert len(registry) == 0
        assert not any(workspace_root.iterdir())


class TestSweep:
    """Test TTL eviction"""

    @pytest.mark.asyncio
    async def test_job_is_kept_until_ttl_passes(self, registry, clock):
        """Test that a job is evicted only once its age exceeds the TTL"""
        job_id = registry.create("http://example.test/hang", "mp3")

        clock.advance(900)
        assert await registry.sweep() == []
        assert job_id in registry

        clock.advance(1)
        assert await registry.sweep() == [job_id]
        with pytest.raises(JobNotFound):
            registry.get(job_id)
        with pytest.raises(JobNotFound):
            registry.open_download(job_id)

    @pytest.mark.asyncio
    async def test_only_old_jobs_are_evicted(self, registry, clock):
        """Test that younger jobs survive a sweep"""
        old = registry.create("http://example.test/hang", "mp3")
        clock.advance(600)
        young = registry.create("http://example.test/hang", "mp3")
        clock.advance(301)

        assert await registry.sweep() == [old]
        assert young in registry

    @pytest.mark.asyncio
    async def test_eviction_waits_for_open_download(self, registry, clock):
        """Test that an open download defers eviction"""
        job_id = registry.create("http://example.test/video", "mp3")
        await finish(registry, job_id)
        lease = registry.open_download(job_id)

        clock.advance(901)
        assert await registry.sweep() == []
        assert job_id in registry

        assert await read_all(lease) == ARTIFACT_BYTES
        await wait_until(lambda: job_id not in registry)

    @pytest.mark.asyncio
    async def test_periodic_sweep_runs_without_requests(self, make_registry, clock):
        """Test that the background sweeper evicts on its own"""
        registry = make_registry(sweep_interval_seconds=0.02)
        await registry.start()
        job_id = registry.create("http://example.test/hang", "mp3")

        clock.advance(901)
        await wait_until(lambda: job_id not in registry)
