"""
External process supervision
Runs one extractor process per job, turns its stdout/stderr into
progress lines and reports a single exit outcome
"""
import asyncio
import codecs
import logging
import re
from collections import deque
from pathlib import Path
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]
ExitCallback = Callable[[int, str], None]

# Exit code reported when the executable cannot be launched at all
LAUNCH_FAILURE_CODE = 127

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class LineSplitter:
    """
    Incremental bytes -> lines splitter.

    yt-dlp redraws its progress meter with a bare carriage return, so
    "\\r", "\\n" and "\\r\\n" all end a line. Lines are stripped and
    empty ones are dropped.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> List[str]:
        text = self._pending + self._decoder.decode(data)
        parts = _LINE_BREAK.split(text)
        self._pending = parts.pop()
        return [part.strip() for part in parts if part.strip()]

    def flush(self) -> List[str]:
        """Return whatever is left once the stream hit EOF"""
        text = (self._pending + self._decoder.decode(b"", final=True)).strip()
        self._pending = ""
        return [text] if text else []


class ProcessHandle:
    """Handle on one supervised process"""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.returncode: Optional[int] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task] = None
        self._kill_requested = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def finished(self) -> bool:
        return self._task is not None and self._task.done()

    def _attach(self, process: asyncio.subprocess.Process):
        self._process = process
        if self._kill_requested:
            self._kill()

    def cancel(self) -> bool:
        """
        Forcefully terminate the process.
        Safe to call repeatedly and after the process exited.
        Returns True only for the call that actually sent the signal.
        """
        if self._kill_requested or self.finished:
            return False
        self._kill_requested = True
        if self._process is None:
            # Not launched yet; killed as soon as it is attached
            return True
        return self._kill()

    def _kill(self) -> bool:
        process = self._process
        if process is None or process.returncode is not None:
            return False
        try:
            process.kill()
        except ProcessLookupError:
            return False
        logger.info(f"Sent SIGKILL to extractor for job {self.job_id} (pid {process.pid})")
        return True

    async def wait(self) -> Optional[int]:
        """Wait until supervision ended (streams drained, exit reported)"""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.returncode


class ProcessSupervisor:
    """Starts and watches extractor processes"""

    def __init__(self, diagnostic_lines: int = 20, read_chunk_size: int = 4096):
        self._diagnostic_lines = diagnostic_lines
        self._read_chunk_size = read_chunk_size

    def start(
        self,
        job_id: str,
        args: Sequence[str],
        on_line: LineCallback,
        on_exit: ExitCallback,
        cwd: Optional[Path] = None,
    ) -> ProcessHandle:
        """
        Launch args in the background and return immediately.

        on_line gets every non-empty output line, on_exit is called exactly
        once with the exit code and the last diagnostic text.
        Must be called from inside a running event loop.
        """
        handle = ProcessHandle(job_id)
        loop = asyncio.get_running_loop()
        handle._task = loop.create_task(
            self._supervise(handle, list(args), on_line, on_exit, cwd),
            name=f"supervise-{job_id}",
        )
        return handle

    async def _supervise(self, handle, args, on_line, on_exit, cwd):
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
            )
        except OSError as e:
            logger.error(f"Could not start extractor for job {handle.job_id}: {e}")
            handle.returncode = LAUNCH_FAILURE_CODE
            on_exit(LAUNCH_FAILURE_CODE, str(e))
            return

        logger.info(f"Extractor started for job {handle.job_id} (pid {process.pid})")
        handle._attach(process)

        diagnostics = deque(maxlen=self._diagnostic_lines)
        last_output = []

        def stdout_line(line):
            last_output[:] = [line]
            on_line(line)

        def stderr_line(line):
            diagnostics.append(line)
            on_line(line)

        try:
            await asyncio.gather(
                self._pump(process.stdout, stdout_line),
                self._pump(process.stderr, stderr_line),
            )
            returncode = await process.wait()
        except asyncio.CancelledError:
            handle.cancel()
            raise

        handle.returncode = returncode
        diagnostic = "\n".join(diagnostics) or (last_output[0] if last_output else "")
        logger.info(f"Extractor for job {handle.job_id} exited with code {returncode}")
        on_exit(returncode, diagnostic)

    async def _pump(self, stream: asyncio.StreamReader, callback: LineCallback):
        splitter = LineSplitter()
        while True:
            chunk = await stream.read(self._read_chunk_size)
            if not chunk:
                break
            for line in splitter.feed(chunk):
                callback(line)
        for line in splitter.flush():
            callback(line)
