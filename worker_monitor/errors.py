"""
Error taxonomy for the worker monitor.

Supervisor failures are handled by the restart state machine and never reach
the query layer. Query failures carry an HTTP-style status so the web layer
can map them onto responses directly.
"""


class WorkerMonitorError(Exception):
    """Base class for every error raised by the monitor."""


class SpawnError(WorkerMonitorError):
    """The worker path or its manifest is invalid."""


class WorkerCrash(WorkerMonitorError):
    """The worker exited with a nonzero code and will not be restarted."""

    def __init__(self, exit_code: int):
        super().__init__(f"Worker crashed with exit code {exit_code}")
        self.exit_code = exit_code


class PersistenceCorruption(WorkerMonitorError):
    """A persisted statistics file could not be parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Corrupted statistics file '{path}': {reason}")
        self.path = path
        self.reason = reason


class HistoryUnavailable(WorkerMonitorError):
    """A history query could not be answered."""
    status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {'err': self.message, 'status': self.status}


class HistoryNotYetAvailable(HistoryUnavailable):
    status = 409


class HistoryNotFound(HistoryUnavailable):
    status = 404
