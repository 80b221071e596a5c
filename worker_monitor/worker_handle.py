"""
Worker handle

The supervisor drives the worker through the small capability defined by
`WorkerHandle` (send / receive / kill / wait plus the captured output
streams), so its state machine does not depend on a particular process API.
`SubprocessWorkerHandle` implements it on top of asyncio subprocesses with a
pipe pair carrying newline-delimited JSON messages in both directions.
"""

import asyncio
import json
import logging
import os
import sys
from typing import Any, Optional, Protocol

from .config import IPC_READ_FD_ENV, IPC_WRITE_FD_ENV

log = logging.getLogger("WorkerMonitor.WorkerHandle")

MAX_MESSAGE_BYTES = 1024 * 1024


class WorkerHandle(Protocol):
    pid: Optional[int]

    async def receive(self) -> Optional[Any]:
        """Next IPC message, or None once the channel is closed."""

    async def read_stdout(self) -> Optional[str]:
        """Next chunk of stdout, or None at EOF."""

    async def read_stderr(self) -> Optional[str]:
        """Next chunk of stderr, or None at EOF."""

    def send(self, message: Any):
        ...

    def kill(self):
        """Terminates the worker. Safe to call on a worker that already exited."""

    async def wait(self) -> int:
        """Waits for the worker to exit and returns its exit code."""


def _decode_message(line: bytes) -> Any:
    text = line.decode('utf-8', errors='replace').rstrip('\r\n')
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # Not JSON: hand the raw text over so it is logged instead of lost
        return text


class SubprocessWorkerHandle:

    def __init__(self, process: asyncio.subprocess.Process, ipc_reader: asyncio.StreamReader,
                 ipc_transport: asyncio.WriteTransport):
        self.process = process
        self.pid = process.pid
        self._ipc_reader = ipc_reader
        self._ipc_transport = ipc_transport

    @classmethod
    async def spawn(cls, worker_path: str, python: str = sys.executable) -> 'SubprocessWorkerHandle':
        """Launches `python worker_path` with stdout/stderr captured and an IPC pipe pair."""
        loop = asyncio.get_running_loop()
        parent_read, child_write = os.pipe()
        child_read, parent_write = os.pipe()

        env = {**os.environ, IPC_WRITE_FD_ENV: str(child_write), IPC_READ_FD_ENV: str(child_read)}
        try:
            process = await asyncio.create_subprocess_exec(
                python, worker_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                pass_fds=(child_write, child_read),
                env=env,
            )
        except BaseException:
            for fd in (parent_read, child_write, child_read, parent_write):
                os.close(fd)
            raise
        # The child owns its ends now; closing ours lets EOF propagate on exit
        os.close(child_write)
        os.close(child_read)

        reader = asyncio.StreamReader(limit=MAX_MESSAGE_BYTES)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader),
                                     os.fdopen(parent_read, 'rb', buffering=0))
        transport, _ = await loop.connect_write_pipe(asyncio.Protocol,
                                                     os.fdopen(parent_write, 'wb', buffering=0))
        return cls(process, reader, transport)

    async def receive(self) -> Optional[Any]:
        while True:
            try:
                line = await self._ipc_reader.readline()
            except ValueError:
                log.warning("Dropping oversized IPC message from worker.")
                continue
            if not line:
                return None
            if line.strip():
                return _decode_message(line)

    @staticmethod
    async def _read_stream(stream: Optional[asyncio.StreamReader]) -> Optional[str]:
        if stream is None:
            return None
        chunk = await stream.read(64 * 1024)
        if not chunk:
            return None
        return chunk.decode('utf-8', errors='replace')

    async def read_stdout(self) -> Optional[str]:
        return await self._read_stream(self.process.stdout)

    async def read_stderr(self) -> Optional[str]:
        return await self._read_stream(self.process.stderr)

    def send(self, message: Any):
        if self._ipc_transport.is_closing():
            raise ConnectionResetError("IPC channel to worker is closed")
        self._ipc_transport.write(json.dumps(message).encode('utf-8') + b'\n')

    def kill(self):
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
        if not self._ipc_transport.is_closing():
            self._ipc_transport.close()

    async def wait(self) -> int:
        code = await self.process.wait()
        if not self._ipc_transport.is_closing():
            self._ipc_transport.close()
        return code
