"""
Process Supervisor

Owns the lifecycle of the single supervised worker:

    STOPPED -> STARTING -> RUNNING -> STOPPED                  (exit code 0)
                                   -> CRASHED -> RESTART_SCHEDULED -> STARTING
                                   -> CRASHED                  (restart disabled, terminal)

Inbound IPC messages are classified into telemetry packets, which go to the
aggregator, and everything else, which is logged as worker output.
"""

import asyncio
import enum
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from .aggregator import Aggregator
from .config import MonitorConfig, WORKER_MANIFEST_FILE, WORKER_ENTRY_FILE
from .errors import SpawnError, WorkerCrash
from .packets import decode_packet
from .persistence import write_error_trail
from .worker_handle import SubprocessWorkerHandle, WorkerHandle

log = logging.getLogger("WorkerMonitor.Supervisor")

# Output of the worker itself goes through its own logger so it can be silenced
worker_log = logging.getLogger("WorkerMonitor.Worker")

OUTPUT_DRAIN_TIMEOUT_SECONDS = 2.0

HandleFactory = Callable[[str], Awaitable[WorkerHandle]]


class SupervisorState(enum.Enum):
    STOPPED = 'stopped'
    STARTING = 'starting'
    RUNNING = 'running'
    CRASHED = 'crashed'
    RESTART_SCHEDULED = 'restart_scheduled'


@dataclass(frozen=True)
class WorkerInfo:
    path: str
    name: str
    version: str


def resolve_worker_info(worker_path: str) -> WorkerInfo:
    """Reads name and version from the worker's manifest.json."""
    if not os.path.isdir(worker_path):
        raise SpawnError(f"Worker path '{worker_path}' is not a directory")
    if not os.path.isfile(os.path.join(worker_path, WORKER_ENTRY_FILE)):
        raise SpawnError(f"Worker path '{worker_path}' has no {WORKER_ENTRY_FILE}")

    manifest_path = os.path.join(worker_path, WORKER_MANIFEST_FILE)
    try:
        with open(manifest_path, 'r', encoding='utf-8') as f:
            manifest = json.load(f)
    except FileNotFoundError:
        raise SpawnError(f"Worker manifest '{manifest_path}' not found") from None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SpawnError(f"Worker manifest '{manifest_path}' is invalid: {e}") from e
    if not isinstance(manifest, dict):
        raise SpawnError(f"Worker manifest '{manifest_path}' is not an object")

    def text(key: str) -> str:
        value = manifest.get(key)
        return value if isinstance(value, str) and value else 'unknown'

    return WorkerInfo(path=worker_path, name=text('name'), version=text('version'))


async def default_handle_factory(worker_path: str) -> WorkerHandle:
    return await SubprocessWorkerHandle.spawn(worker_path)


class Supervisor:

    def __init__(self, config: MonitorConfig, aggregator: Aggregator,
                 handle_factory: HandleFactory = default_handle_factory):
        self.config = config
        self.aggregator = aggregator
        self._handle_factory = handle_factory

        self.handle: Optional[WorkerHandle] = None
        self.info: Optional[WorkerInfo] = None
        self.active = False
        self.state = SupervisorState.STOPPED
        self.fatal_error: Optional[Exception] = None
        self.restart_attempts = 0

        self._tasks: List[asyncio.Task] = []
        self._restart_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._closed = asyncio.Event()

        worker_log.disabled = config.suppress_console
        if config.suppress_console:
            log.info("Running in silent mode")

    # --- Lifecycle ---

    async def spawn(self) -> WorkerInfo:
        self.state = SupervisorState.STARTING
        try:
            info = resolve_worker_info(self.config.worker_path)
            log.info(f"Starting '{info.name}@{info.version}'")
            handle = await self._handle_factory(info.path)
        except SpawnError:
            self.state = SupervisorState.STOPPED
            raise
        except OSError as e:
            self.state = SupervisorState.STOPPED
            raise SpawnError(f"Could not launch worker at '{self.config.worker_path}': {e}") from e

        self.info = info
        self.handle = handle
        self.active = True
        self.state = SupervisorState.RUNNING
        self.fatal_error = None
        self._stopping = False
        self._closed.clear()

        pumps = [
            asyncio.create_task(self._pump_messages(handle)),
            asyncio.create_task(self._pump_output(handle.read_stdout, self._on_stdout)),
            asyncio.create_task(self._pump_output(handle.read_stderr, self._on_stderr)),
        ]
        self._tasks = pumps + [asyncio.create_task(self._watch_exit(handle, pumps))]
        log.info(f"Worker '{info.name}' running (pid {getattr(handle, 'pid', None)})")
        return info

    def kill(self):
        """Kills the current worker, if any. Idempotent."""
        handle, self.handle = self.handle, None
        self.active = False
        if handle is not None:
            self._stopping = True
            handle.kill()

    async def stop(self):
        """Cancels a pending restart, kills the worker and waits for its tasks."""
        self._stopping = True
        if self._restart_task is not None and not self._restart_task.done():
            self._restart_task.cancel()
            await asyncio.gather(self._restart_task, return_exceptions=True)
        self.kill()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.state = SupervisorState.STOPPED
        self._closed.set()
        log.info("Supervisor stopped.")

    async def wait_closed(self):
        """Waits until the supervisor reaches a terminal state; re-raises a fatal crash."""
        await self._closed.wait()
        if self.fatal_error is not None:
            raise self.fatal_error

    def send(self, message: Any) -> bool:
        if self.handle is None:
            return False
        try:
            self.handle.send(message)
            return True
        except (ConnectionResetError, BrokenPipeError, RuntimeError) as e:
            log.warning(f"Could not send message to worker: {e}")
            return False

    # --- Exit handling ---

    async def _watch_exit(self, handle: WorkerHandle, pumps: List[asyncio.Task]):
        try:
            code = await handle.wait()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.error("Error while waiting for worker exit:", exc_info=True)
            code = 1
        # Let the readers drain whatever the worker wrote before exiting
        await asyncio.wait(pumps, timeout=OUTPUT_DRAIN_TIMEOUT_SECONDS)
        self._on_exit(handle, code)

    def _on_exit(self, handle: WorkerHandle, code: int):
        if self.handle is not None and self.handle is not handle:
            return  # a newer worker is already running

        self.active = False
        self.handle = None

        if code == 0 or self._stopping:
            log.info(f"Worker exited cleanly (code {code}).")
            self.state = SupervisorState.STOPPED
            self._closed.set()
            return

        self.state = SupervisorState.CRASHED
        if not self.config.should_restart:
            self.fatal_error = WorkerCrash(code)
            log.critical(f"Worker crashed with exit code {code} - process will not be restarted.")
            self._closed.set()
            return

        log.error(f"Worker crashed with exit code {code}.")
        handle.kill()
        self._schedule_restart()

    def _schedule_restart(self):
        if self._restart_task is not None and not self._restart_task.done():
            log.debug("Restart already scheduled; not re-arming.")
            return
        self.state = SupervisorState.RESTART_SCHEDULED
        self._restart_task = asyncio.create_task(self._restart_after_delay())

    async def _restart_after_delay(self):
        log.warning(f"Restarting process in {self.config.restart_delay_ms}ms...")
        await asyncio.sleep(self.config.restart_delay_seconds)
        if self._stopping:
            return
        self.restart_attempts += 1
        try:
            await self.spawn()
        except SpawnError as e:
            self.fatal_error = e
            log.critical(f"Worker restart failed: {e}")
            self._closed.set()

    # --- Inbound traffic ---

    async def _pump_messages(self, handle: WorkerHandle):
        while True:
            try:
                message = await handle.receive()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.error("IPC channel to worker failed:", exc_info=True)
                return
            if message is None:
                return
            try:
                self._on_message(message)
            except Exception:
                log.error("Error handling message from worker:", exc_info=True)

    def _on_message(self, message: Any):
        packet = decode_packet(message)
        if packet is None:
            worker_log.info(message if isinstance(message, str) else json.dumps(message, default=str))
            return
        self.aggregator.on_request(packet)

    @staticmethod
    async def _pump_output(read: Callable[[], Awaitable[Optional[str]]], on_chunk: Callable[[str], None]):
        while True:
            try:
                chunk = await read()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.error("Reading worker output failed:", exc_info=True)
                return
            if chunk is None:
                return
            on_chunk(chunk)

    def _on_stdout(self, chunk: str):
        for line in chunk.splitlines():
            if line.strip():
                worker_log.info(line)

    def _on_stderr(self, chunk: str):
        for line in chunk.splitlines():
            if line.strip():
                worker_log.error(line)
        try:
            path = write_error_trail(self.config.logs_dir, chunk)
            log.debug(f"Worker error written to '{path}'")
        except OSError as e:
            log.error(f"Could not persist worker error trail: {e}")
