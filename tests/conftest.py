"""
Shared fixtures for Worker Monitor tests.
"""

import asyncio
import datetime
import json
import random
from pathlib import Path

import pytest

from worker_monitor.config import MonitorConfig


# 2026-10-19 is a Monday
MONDAY = datetime.datetime(2026, 10, 19, 10, 0, 5)


class FixedClock:
    """Callable clock that tests can move explicitly."""

    def __init__(self, now: datetime.datetime = MONDAY):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> datetime.datetime:
        self.now += datetime.timedelta(**kwargs)
        return self.now


class FakeWorkerHandle:
    """In-memory stand-in for a worker process."""

    def __init__(self, pid: int = 4242):
        self.pid = pid
        self.messages: asyncio.Queue = asyncio.Queue()
        self.stdout: asyncio.Queue = asyncio.Queue()
        self.stderr: asyncio.Queue = asyncio.Queue()
        self.exit_future = asyncio.get_running_loop().create_future()
        self.sent = []
        self.kill_calls = 0

    async def receive(self):
        return await self.messages.get()

    async def read_stdout(self):
        return await self.stdout.get()

    async def read_stderr(self):
        return await self.stderr.get()

    def send(self, message):
        if self.exit_future.done():
            raise ConnectionResetError("worker is gone")
        self.sent.append(message)

    def exit(self, code: int):
        """Simulates the worker process exiting with `code`."""
        if self.exit_future.done():
            return
        for queue in (self.messages, self.stdout, self.stderr):
            queue.put_nowait(None)
        self.exit_future.set_result(code)

    def kill(self):
        self.kill_calls += 1
        self.exit(-9)

    async def wait(self) -> int:
        return await asyncio.shield(self.exit_future)


class FakeWorkerFactory:
    def __init__(self):
        self.handles = []
        self.paths = []

    async def __call__(self, worker_path: str) -> FakeWorkerHandle:
        handle = FakeWorkerHandle(pid=4242 + len(self.handles))
        self.handles.append(handle)
        self.paths.append(worker_path)
        return handle


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Polls `predicate` until it is truthy or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def logs_dir(tmp_path) -> Path:
    path = tmp_path / "logs"
    path.mkdir()
    return path


@pytest.fixture
def worker_dir(tmp_path) -> Path:
    """Minimal valid worker directory."""
    path = tmp_path / "worker"
    path.mkdir()
    (path / "__main__.py").write_text("import sys\nsys.exit(0)\n")
    (path / "manifest.json").write_text(json.dumps({"name": "test-worker", "version": "1.2.3"}))
    return path


@pytest.fixture
def monitor_config(logs_dir, worker_dir) -> MonitorConfig:
    return MonitorConfig(
        worker_path=str(worker_dir),
        logs_dir=str(logs_dir),
        tick_interval_ms=30000,
        should_restart=True,
        restart_delay_ms=100,
        disable_logs=False,
        suppress_console=False,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def fake_worker_factory() -> FakeWorkerFactory:
    return FakeWorkerFactory()


@pytest.fixture
def aggregator(monitor_config, clock, rng):
    from worker_monitor.aggregator import Aggregator

    return Aggregator(monitor_config, rng=rng, clock=clock)


@pytest.fixture
def scenario_packets():
    """Two multipart requests, one of them failed with a 500."""
    from worker_monitor.packets import MultipartNetworkRequest

    return [
        MultipartNetworkRequest(total_time=200, handle_time=120, processing_time=30),
        MultipartNetworkRequest(total_time=180, handle_time=100, processing_time=20, error=500),
    ]


def write_day_file(directory: Path, date: datetime.date, overview: dict, hourly: dict = None,
                   suffix: str = "") -> Path:
    """Writes a persisted day document the way the aggregator lays it out."""
    document = {"overview": overview}
    if hourly is not None:
        document["hourly"] = hourly
    path = directory / f"{date.strftime('%d-%m-%Y')}{suffix}.json"
    path.write_text(json.dumps(document))
    return path


def log_data(total_requests: int, total_errors: int = 0, handle: float = 100.0,
             process: float = 10.0, total: float = 150.0) -> dict:
    return {
        "overview": {
            "totalRequests": total_requests,
            "totalErrors": total_errors,
            "errorPercentage": round(total_errors / total_requests, 2) if total_requests else 0,
        },
        "timings": {
            "averageTotalTime": total,
            "minMaxTotalTime": [total - 10, total + 10],
            "averageHandleTime": handle,
            "minMaxHandleTime": [handle - 10, handle + 10],
            "averageProcessTime": process,
            "minMaxProcessTime": [process - 1, process + 1],
        },
        "errorMap": {"500": total_errors} if total_errors else {},
    }


@pytest.fixture
def make_day_file():
    return write_day_file


@pytest.fixture
def make_log_data():
    return log_data


@pytest.fixture
def wait_until():
    return wait_for
