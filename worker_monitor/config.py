import os
from dataclasses import dataclass, field, replace


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


# --- Configuration ---
# The logs directory is relative to the working directory by default.
# It can be overridden with the WORKER_MONITOR_LOGS_DIR environment variable.
LOGS_DIR = os.getenv('WORKER_MONITOR_LOGS_DIR', 'logs')
WORKER_PATH = os.getenv('WORKER_MONITOR_WORKER_PATH', 'worker')

SERVER_HOST = "0.0.0.0"
SERVER_PORT = int(os.getenv('WORKER_MONITOR_PORT', '8080'))
REQUIRE_API_KEY = _env_bool('WORKER_MONITOR_REQUIRE_API_KEY', False)
API_KEY = os.getenv('WORKER_MONITOR_API_KEY', '')

# --- Aggregation ---
TICK_INTERVAL_MS = int(os.getenv('WORKER_MONITOR_TICK_INTERVAL_MS', '30000'))
LATEST_HISTORY_SIZE = 120  # ~1h of 30s ticks
HOURLY_HISTORY_SIZE = 24  # one day of hourly rollups
DISABLE_LOGS = _env_bool('WORKER_MONITOR_DISABLE_LOGS', False)
MS_PER_HOUR = 3600 * 1000

# Placeholder baselines used until a day of history has been persisted
DEFAULT_HANDLE_TIME = 150.0
DEFAULT_PROCESS_TIME = 15.0
DEFAULT_ERROR_PERCENTAGE = 0.035
BACKFILL_NOISE_RATIO = 0.05  # synthetic values stay within +-5% of baseline
BACKFILL_MIN_MAX_SPREAD = 10.0  # ms between synthetic min/max and the average

# --- Supervisor ---
SHOULD_RESTART = _env_bool('WORKER_MONITOR_SHOULD_RESTART', True)
RESTART_DELAY_MS = int(os.getenv('WORKER_MONITOR_RESTART_DELAY_MS', '5000'))
SUPPRESS_CONSOLE = _env_bool('WORKER_MONITOR_SUPPRESS_CONSOLE', False)
WORKER_MANIFEST_FILE = 'manifest.json'
WORKER_ENTRY_FILE = '__main__.py'

# File descriptors of the IPC pipe pair, as seen by the worker
IPC_WRITE_FD_ENV = 'WORKER_MONITOR_IPC_WRITE_FD'
IPC_READ_FD_ENV = 'WORKER_MONITOR_IPC_READ_FD'


@dataclass(frozen=True)
class MonitorConfig:
    """Immutable configuration handed to every component at construction."""
    worker_path: str = WORKER_PATH
    logs_dir: str = LOGS_DIR
    tick_interval_ms: int = TICK_INTERVAL_MS
    should_restart: bool = SHOULD_RESTART
    restart_delay_ms: int = RESTART_DELAY_MS
    disable_logs: bool = DISABLE_LOGS
    suppress_console: bool = SUPPRESS_CONSOLE
    host: str = SERVER_HOST
    port: int = SERVER_PORT
    require_api_key: bool = REQUIRE_API_KEY
    api_key: str = field(default=API_KEY, repr=False)

    def __post_init__(self):
        if self.tick_interval_ms <= 0:
            raise ValueError(f"tick_interval_ms must be positive, got {self.tick_interval_ms}")
        if MS_PER_HOUR % self.tick_interval_ms:
            raise ValueError(f"tick_interval_ms must divide an hour ({MS_PER_HOUR} ms) evenly, "
                             f"got {self.tick_interval_ms}")
        if self.restart_delay_ms < 0:
            raise ValueError(f"restart_delay_ms must not be negative, got {self.restart_delay_ms}")

    @classmethod
    def from_env(cls) -> 'MonitorConfig':
        """Re-reads the environment so values set after import are honoured."""
        return cls(
            worker_path=os.getenv('WORKER_MONITOR_WORKER_PATH', WORKER_PATH),
            logs_dir=os.getenv('WORKER_MONITOR_LOGS_DIR', LOGS_DIR),
            tick_interval_ms=int(os.getenv('WORKER_MONITOR_TICK_INTERVAL_MS', str(TICK_INTERVAL_MS))),
            should_restart=_env_bool('WORKER_MONITOR_SHOULD_RESTART', SHOULD_RESTART),
            restart_delay_ms=int(os.getenv('WORKER_MONITOR_RESTART_DELAY_MS', str(RESTART_DELAY_MS))),
            disable_logs=_env_bool('WORKER_MONITOR_DISABLE_LOGS', DISABLE_LOGS),
            suppress_console=_env_bool('WORKER_MONITOR_SUPPRESS_CONSOLE', SUPPRESS_CONSOLE),
            port=int(os.getenv('WORKER_MONITOR_PORT', str(SERVER_PORT))),
            require_api_key=_env_bool('WORKER_MONITOR_REQUIRE_API_KEY', REQUIRE_API_KEY),
            api_key=os.getenv('WORKER_MONITOR_API_KEY', API_KEY),
        )

    def with_overrides(self, **overrides) -> 'MonitorConfig':
        """Returns a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @property
    def tick_seconds(self) -> float:
        return self.tick_interval_ms / 1000.0

    @property
    def restart_delay_seconds(self) -> float:
        return self.restart_delay_ms / 1000.0
