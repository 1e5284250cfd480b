"""
Resource release for finished, cancelled or expired jobs
Best effort: failures are logged, never raised
"""
import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional

from mediafetch.services.process_supervisor import ProcessHandle

logger = logging.getLogger(__name__)

# How long to wait for a killed process to be reaped
PROCESS_EXIT_TIMEOUT_SECONDS = 10.0


def remove_workspace(workspace: Path) -> bool:
    """Recursively delete a job workspace. Returns False if anything was left behind."""
    try:
        shutil.rmtree(workspace)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning(f"Could not remove workspace {workspace}: {e}")
        return False
    return True


async def reap(handle: Optional[ProcessHandle], workspace: Path) -> bool:
    """
    Terminate the job's process (if still running) and remove its workspace.
    """
    if handle is not None:
        handle.cancel()
        try:
            await asyncio.wait_for(handle.wait(), timeout=PROCESS_EXIT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"Extractor for job {handle.job_id} did not exit after SIGKILL")
        except Exception as e:
            logger.warning(f"Supervision of job {handle.job_id} ended with error: {e}")

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, remove_workspace, workspace)
