"""
Live progress feed
Polls the job registry and yields snapshots until the job finishes
or disappears
"""
import asyncio
import logging
from typing import AsyncIterator

from mediafetch.core.errors import JobNotFound
from mediafetch.models.jobs import ProgressEvent
from mediafetch.services.job_registry import JobRegistry

logger = logging.getLogger(__name__)


class ProgressChannel:
    """Polling-based progress feed over a JobRegistry"""

    def __init__(self, registry: JobRegistry, poll_interval: float = 1.0, grace_period: float = 2.0):
        self._registry = registry
        self._poll_interval = poll_interval
        self._grace_period = grace_period

    async def subscribe(self, job_id: str) -> AsyncIterator[ProgressEvent]:
        """
        Yield one snapshot per poll interval.

        Once the job is terminal the feed keeps going for the grace period
        and ends with an event marked final. A job that is (or becomes)
        absent ends the feed with an expired marker. Closing the feed has
        no effect on the job.
        """
        loop = asyncio.get_running_loop()
        terminal_since = None

        while True:
            try:
                info = self._registry.get(job_id)
            except JobNotFound:
                yield ProgressEvent.expired_marker(job_id)
                return

            event = ProgressEvent.from_job(info)
            if info.status.is_terminal:
                now = loop.time()
                if terminal_since is None:
                    terminal_since = now
                if now - terminal_since >= self._grace_period:
                    event.final = True
                    yield event
                    return

            yield event
            await asyncio.sleep(self._poll_interval)
