"""
Worker-side end of the IPC channel.

A supervised worker reports one packet per handled request:

    channel = WorkerChannel.from_env()
    channel.report_multipart_request(total_time=200, handle_time=120, processing_time=30)

Outside of a supervisor the channel is a silent no-op, so workers can also
run standalone.
"""

import json
import logging
import os
import threading
from typing import Any, Optional

from .config import IPC_READ_FD_ENV, IPC_WRITE_FD_ENV
from .packets import NetworkRequest, MultipartNetworkRequest, Packet, encode_packet

log = logging.getLogger("WorkerMonitor.WorkerChannel")


class WorkerChannel:

    def __init__(self, write_file=None, read_file=None):
        self._write_file = write_file
        self._read_file = read_file
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls) -> 'WorkerChannel':
        write_fd, read_fd = os.getenv(IPC_WRITE_FD_ENV), os.getenv(IPC_READ_FD_ENV)
        if write_fd is None:
            log.debug("No IPC channel configured; telemetry will not be reported.")
            return cls()
        write_file = os.fdopen(int(write_fd), 'w', encoding='utf-8', buffering=1)
        read_file = os.fdopen(int(read_fd), 'r', encoding='utf-8') if read_fd is not None else None
        return cls(write_file, read_file)

    @property
    def connected(self) -> bool:
        return self._write_file is not None

    def send(self, message: Any):
        if self._write_file is None:
            return
        line = json.dumps(message)
        with self._lock:
            self._write_file.write(line + '\n')
            self._write_file.flush()

    def send_packet(self, packet: Packet):
        self.send(encode_packet(packet))

    def report_request(self, total_time: float, error: Optional[int] = None):
        self.send_packet(NetworkRequest(total_time=total_time, error=error))

    def report_multipart_request(self, total_time: float, handle_time: float,
                                 processing_time: float, error: Optional[int] = None):
        self.send_packet(MultipartNetworkRequest(total_time=total_time, handle_time=handle_time,
                                                 processing_time=processing_time, error=error))

    def receive(self) -> Optional[Any]:
        """Blocks for the next message from the supervisor; None when the channel is closed."""
        if self._read_file is None:
            return None
        line = self._read_file.readline()
        if not line:
            return None
        return json.loads(line)

    def close(self):
        for f in (self._write_file, self._read_file):
            if f is not None:
                f.close()
        self._write_file = self._read_file = None
