"""
In-memory job registry
Owns every job's lifecycle: creation, progress/terminal updates,
downloads, cancellation and TTL eviction
"""
import asyncio
import logging
import os
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Set

from mediafetch.core.config import Settings
from mediafetch.core.errors import (
    ArtifactGone,
    ArtifactMissing,
    CapacityExceeded,
    JobFailed,
    JobNotFound,
    JobNotReady,
    ProcessError,
    ValidationError,
)
from mediafetch.models.jobs import JobInfo, JobStatus, OutputFormat
from mediafetch.services import format_selector, reaper
from mediafetch.services.process_supervisor import ProcessHandle, ProcessSupervisor

logger = logging.getLogger(__name__)

STARTING_TEXT = "Starting..."


@dataclass
class Job:
    """Mutable job record. Only the registry touches it."""
    id: str
    locator: str
    format: OutputFormat
    workspace: Path
    created_mono: float
    quality: Optional[int] = None
    status: JobStatus = JobStatus.RUNNING
    artifact_path: Optional[Path] = None
    progress_text: str = STARTING_TEXT
    error_text: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


CommandBuilder = Callable[[Job], List[str]]


class _JobEntry:
    """Registry slot: the job plus its process handle and synchronization"""

    def __init__(self, job: Job):
        self.job = job
        self.handle: Optional[ProcessHandle] = None
        self.lock = asyncio.Lock()
        self.finished = asyncio.Event()  # set on terminal transition or release
        self.downloads = 0
        self.released = False


class DownloadLease:
    """
    Open artifact of a finished job.

    While a lease is open the job is not evicted by the sweep. Closing the
    last lease releases the job.
    """

    def __init__(self, registry: "JobRegistry", entry: _JobEntry, fileobj: BinaryIO, size: int, chunk_size: int):
        self._registry = registry
        self._entry = entry
        self._file = fileobj
        self._chunk_size = chunk_size
        self._closed = False
        self.job_id = entry.job.id
        self.size = size
        self.content_type = entry.job.format.content_type
        self.filename = f"download{entry.job.format.extension}"

    @property
    def closed(self) -> bool:
        return self._closed

    async def iter_chunks(self):
        """Yield the artifact bytes; the lease is closed when iteration stops"""
        loop = asyncio.get_running_loop()
        try:
            while True:
                chunk = await loop.run_in_executor(None, self._file.read, self._chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._file.close()
        self._registry._download_finished(self._entry)

    async def aclose(self):
        self.close()


class JobRegistry:
    """In-memory job registry"""

    def __init__(
        self,
        workspace_root: Path,
        ttl_seconds: float = 900,
        sweep_interval_seconds: float = 60.0,
        max_concurrent_jobs: int = 4,
        error_text_max_chars: int = 2000,
        download_chunk_size: int = 64 * 1024,
        command_builder: Optional[CommandBuilder] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: Dict[str, _JobEntry] = {}
        self._workspace_root = Path(workspace_root)
        self._ttl = ttl_seconds
        self._sweep_interval = sweep_interval_seconds
        self._max_concurrent = max_concurrent_jobs
        self._error_text_max_chars = error_text_max_chars
        self._download_chunk_size = download_chunk_size
        self._command_builder = command_builder or self._default_command
        self._supervisor = supervisor or ProcessSupervisor()
        self._clock = clock
        self._sweeper: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, config: Settings, **kwargs) -> "JobRegistry":
        binary = config.YTDLP_BINARY
        kwargs.setdefault(
            "command_builder",
            lambda job: format_selector.build_command(
                job.locator, job.format, job.workspace, job.quality, binary=binary
            ),
        )
        return cls(
            workspace_root=Path(config.WORKSPACE_ROOT),
            ttl_seconds=config.JOB_TTL_SECONDS,
            sweep_interval_seconds=config.SWEEP_INTERVAL_SECONDS,
            max_concurrent_jobs=config.MAX_CONCURRENT_JOBS,
            error_text_max_chars=config.ERROR_TEXT_MAX_CHARS,
            download_chunk_size=config.DOWNLOAD_CHUNK_SIZE,
            **kwargs,
        )

    @staticmethod
    def _default_command(job: Job) -> List[str]:
        return format_selector.build_command(job.locator, job.format, job.workspace, job.quality)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start the periodic eviction sweep"""
        if self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(), name="job-sweeper")
            logger.info(
                f"Job sweeper started (interval={self._sweep_interval}s, ttl={self._ttl}s)"
            )

    async def stop(self):
        """Stop sweeping and release every remaining job"""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        entries = list(self._entries.values())
        if entries:
            logger.info(f"Releasing {len(entries)} job(s) on shutdown")
            await asyncio.gather(*(self._release(entry, "shutdown") for entry in entries))
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error during job sweep: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create(self, locator: str, format, quality=None) -> str:
        """
        Validate the request, allocate a workspace and start extraction.
        Returns the job id without waiting for the extractor.
        A quality that is not a positive integer is ignored.
        """
        locator = (locator or "").strip()
        if not locator:
            raise ValidationError("Missing url", field="url")
        if not locator.startswith("http"):
            raise ValidationError("Bad url: only http(s) locators are accepted", field="url")

        fmt = self._parse_format(format)
        quality = format_selector.parse_quality(quality)

        running = self.running_count()
        if running >= self._max_concurrent:
            raise CapacityExceeded(
                f"Maximum concurrent jobs reached ({running}). Please wait for a job to complete."
            )

        job_id = uuid.uuid4().hex
        while job_id in self._entries:
            job_id = uuid.uuid4().hex

        self._workspace_root.mkdir(parents=True, exist_ok=True)
        workspace = Path(tempfile.mkdtemp(prefix=f"job-{job_id[:8]}-", dir=self._workspace_root))

        job = Job(
            id=job_id,
            locator=locator,
            format=fmt,
            quality=quality if fmt is OutputFormat.MP4 else None,
            workspace=workspace,
            created_mono=self._clock(),
        )
        entry = _JobEntry(job)
        self._entries[job_id] = entry

        args = self._command_builder(job)
        entry.handle = self._supervisor.start(
            job_id,
            args,
            on_line=partial(self._on_line, entry),
            on_exit=partial(self._on_exit, entry),
            cwd=workspace,
        )
        logger.info(f"Created job {job_id}: format={fmt.value}, quality={job.quality}, url={locator}")
        return job_id

    @staticmethod
    def _parse_format(value) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        text = str(value or "").strip().lower()
        try:
            return OutputFormat(text)
        except ValueError:
            allowed = " or ".join(f.value for f in OutputFormat)
            raise ValidationError(f"format must be {allowed}", field="format") from None

    def get(self, job_id: str) -> JobInfo:
        """Snapshot of the job; raises JobNotFound for unknown or evicted ids"""
        return self._snapshot(self._require(job_id))

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def running_count(self) -> int:
        return sum(
            1 for entry in self._entries.values()
            if entry.job.status is JobStatus.RUNNING and not entry.released
        )

    def _require(self, job_id: str) -> _JobEntry:
        entry = self._entries.get(job_id)
        if entry is None:
            raise JobNotFound(f"Job {job_id} not found")
        return entry

    @staticmethod
    def _snapshot(entry: _JobEntry) -> JobInfo:
        job = entry.job
        return JobInfo(
            job_id=job.id,
            status=job.status,
            format=job.format,
            quality=job.quality,
            created_at=job.created_at,
            updated_at=job.updated_at,
            progress_text=job.progress_text,
            error_text=job.error_text,
        )

    async def wait_terminal(self, job_id: str) -> JobInfo:
        """Wait for the job to finish; raises JobNotFound if it is released first"""
        entry = self._require(job_id)
        await entry.finished.wait()
        if entry.released:
            raise JobNotFound(f"Job {job_id} not found")
        return self._snapshot(entry)

    # ------------------------------------------------------------------
    # Supervisor callbacks
    # ------------------------------------------------------------------

    def _on_line(self, entry: _JobEntry, line: str):
        job = entry.job
        if entry.released or job.status.is_terminal:
            return
        job.progress_text = line
        job.updated_at = datetime.now()

    def _on_exit(self, entry: _JobEntry, returncode: int, diagnostic: str):
        job = entry.job
        if entry.released or job.status.is_terminal:
            return

        if returncode != 0:
            error = ProcessError(
                self._bounded(diagnostic) or f"Extractor exited with code {returncode}"
            )
            self._fail(entry, error)
            return

        artifact = format_selector.artifact_path(job.workspace, job.format)
        if not artifact.is_file():
            self._fail(entry, ArtifactMissing("Extractor finished but produced no output file"))
            return

        job.artifact_path = artifact
        job.status = JobStatus.DONE
        job.updated_at = datetime.now()
        entry.finished.set()
        logger.info(f"Job {job.id} completed: {artifact.name} ({artifact.stat().st_size} bytes)")

    def _fail(self, entry: _JobEntry, error):
        job = entry.job
        job.status = JobStatus.FAILED
        job.error_text = error.message
        job.updated_at = datetime.now()
        entry.finished.set()
        logger.error(f"Job {job.id} failed [{error.code}]: {error.message}")

    def _bounded(self, text: str) -> str:
        text = (text or "").strip()
        if len(text) > self._error_text_max_chars:
            text = text[-self._error_text_max_chars:]
        return text

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def open_download(self, job_id: str) -> DownloadLease:
        """
        Open the artifact of a finished job for streaming.
        """
        entry = self._require(job_id)
        job = entry.job

        if job.status is JobStatus.RUNNING:
            raise JobNotReady(f"Job {job_id} is still running")
        if job.status is JobStatus.FAILED:
            raise JobFailed(job.error_text or f"Job {job_id} failed")
        if entry.released or job.artifact_path is None:
            raise ArtifactGone(f"Artifact of job {job_id} was already reclaimed")

        try:
            fileobj = open(job.artifact_path, "rb")
        except FileNotFoundError:
            raise ArtifactGone(f"Artifact of job {job_id} was already reclaimed") from None

        size = os.fstat(fileobj.fileno()).st_size
        entry.downloads += 1
        logger.info(f"Download of job {job_id} started ({size} bytes)")
        return DownloadLease(self, entry, fileobj, size, self._download_chunk_size)

    def _download_finished(self, entry: _JobEntry):
        entry.downloads -= 1
        if entry.downloads == 0 and not entry.released:
            self._spawn(self._release(entry, "downloaded"))

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Release (cleanup, cancellation, eviction)
    # ------------------------------------------------------------------

    async def cleanup(self, job_id: str) -> bool:
        """
        Kill the job's process, remove its workspace and drop it from the
        registry. Idempotent; returns True only for the call that did the work.
        """
        entry = self._entries.get(job_id)
        if entry is None:
            return False
        return await self._release(entry, "cleanup")

    async def cancel(self, job_id: str) -> bool:
        """Client-triggered cancellation"""
        entry = self._require(job_id)
        return await self._release(entry, "cancelled")

    async def sweep(self) -> List[str]:
        """
        Evict every job older than the TTL. Jobs with an open download are
        skipped until the download ends.
        """
        now = self._clock()
        evicted = []
        for entry in list(self._entries.values()):
            job = entry.job
            if now - job.created_mono <= self._ttl:
                continue
            if entry.downloads:
                logger.info(f"Deferring eviction of job {job.id}: download in progress")
                continue
            if await self._release(entry, "expired"):
                evicted.append(job.id)
        if evicted:
            logger.info(f"Sweep evicted {len(evicted)} job(s)")
        return evicted

    async def _release(self, entry: _JobEntry, reason: str) -> bool:
        job = entry.job
        async with entry.lock:
            if entry.released:
                return False
            entry.released = True
            try:
                await reaper.reap(entry.handle, job.workspace)
            except Exception as e:
                logger.warning(f"Cleanup of job {job.id} incomplete: {e}")
            finally:
                if self._entries.get(job.id) is entry:
                    del self._entries[job.id]
                entry.finished.set()
        logger.info(f"Released job {job.id} ({reason})")
        return True
