"""
Shared fixtures: a fake extractor wired into the job registry
"""
import asyncio
import sys
import time
from pathlib import Path

import pytest

from mediafetch.services.format_selector import artifact_path
from mediafetch.services.job_registry import JobRegistry

FAKE_EXTRACTOR = Path(__file__).parent / "fake_extractor.py"


def fake_command(job):
    """
    Run the fake extractor instead of yt-dlp.
    The last path segment of the locator picks the behavior
    (ok, fail, noartifact, hang); anything else behaves like ok.
    """
    behavior = job.locator.rstrip("/").rsplit("/", 1)[-1]
    return [sys.executable, str(FAKE_EXTRACTOR), behavior, str(artifact_path(job.workspace, job.format))]


class FakeClock:
    """Monotonic clock the tests move by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def workspace_root(tmp_path):
    return tmp_path / "workspaces"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def make_registry(workspace_root, clock):
    registries = []

    def factory(**kwargs):
        kwargs.setdefault("ttl_seconds", 900)
        kwargs.setdefault("max_concurrent_jobs", 8)
        kwargs.setdefault("download_chunk_size", 4096)
        registry = JobRegistry(workspace_root, command_builder=fake_command, clock=clock, **kwargs)
        registries.append(registry)
        return registry

    yield factory

    for registry in registries:
        await registry.stop()


@pytest.fixture
async def registry(make_registry):
    return make_registry()
