"""
Aggregator

Owns the live statistics pipeline. Packets are buffered by `on_request` and
flushed on a fixed-rate tick into per-tick snapshots, which roll up into
hourly and daily snapshots persisted under the logs directory.
"""

import asyncio
import datetime
import enum
import json
import logging
import math
import os
import random
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from .config import MonitorConfig, LATEST_HISTORY_SIZE, HOURLY_HISTORY_SIZE
from .errors import HistoryUnavailable, HistoryNotYetAvailable, HistoryNotFound
from .log_history import LogHistory
from .packets import Packet
from .persistence import daily_file_path, overview_file_path, parse_query_date, format_file_date
from .statistics import Baseline, Statistics, StatisticsView

log = logging.getLogger("WorkerMonitor.Aggregator")

SECONDS_PER_HOUR = 3600


class RollupPhase(enum.Enum):
    SAMPLING = 'sampling'
    HOURLY_ROLLUP = 'hourly_rollup'
    DAILY_ROLLUP = 'daily_rollup'


@dataclass(frozen=True)
class TickSchedule:
    """Rollup thresholds derived from the tick interval, so cadence follows the configuration."""
    tick_seconds: float

    def __post_init__(self):
        if not 0 < self.tick_seconds <= SECONDS_PER_HOUR:
            raise ValueError(f"Tick interval must be within (0, 3600] seconds, got {self.tick_seconds}")
        ticks = SECONDS_PER_HOUR / self.tick_seconds
        if not math.isclose(ticks, round(ticks), rel_tol=1e-9, abs_tol=1e-6):
            # Rollups count ticks, so an hour must be a whole number of them
            raise ValueError(f"Tick interval must divide an hour evenly, got {self.tick_seconds}s")

    @property
    def ticks_per_hour(self) -> int:
        return max(1, round(SECONDS_PER_HOUR / self.tick_seconds))

    @property
    def ticks_per_day(self) -> int:
        return self.ticks_per_hour * 24

    def ticks_since_midnight(self, now: datetime.datetime) -> int:
        seconds = now.hour * 3600 + now.minute * 60 + now.second + now.microsecond / 1e6
        return int(seconds // self.tick_seconds)

    def phase_for(self, tick: int) -> RollupPhase:
        """The daily rollup includes the hourly one; at most one phase is returned."""
        if tick >= self.ticks_per_day:
            return RollupPhase.DAILY_ROLLUP
        if tick % self.ticks_per_hour == 0:
            return RollupPhase.HOURLY_ROLLUP
        return RollupPhase.SAMPLING


def _empty_response(now: datetime.datetime) -> Dict[str, Any]:
    return {'range': [now.isoformat(), now.isoformat()], 'count': 0, 'entries': []}


def _views_response(views: List[StatisticsView], now: datetime.datetime) -> Dict[str, Any]:
    if len(views) < 2:
        return _empty_response(now)
    return {
        'range': [views[0].timestamp.isoformat(), views[-1].timestamp.isoformat()],
        'count': len(views),
        'entries': [view.to_dict() for view in views],
    }


class Aggregator:

    def __init__(self, config: MonitorConfig, history: Optional[LogHistory] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime.datetime] = datetime.datetime.now):
        self.config = config
        self.schedule = TickSchedule(config.tick_seconds)
        self._clock = clock
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None

        now = clock()
        self.request_buffer: List[Packet] = []
        self._buffer_started_at = now

        self.latest_history: deque = deque(maxlen=LATEST_HISTORY_SIZE)
        self.latest_views: deque = deque(maxlen=LATEST_HISTORY_SIZE)
        self.hourly_history: deque = deque(maxlen=HOURLY_HISTORY_SIZE)
        self._pending_hourly: List[Statistics] = []
        self._pending_daily: List[Statistics] = []

        # Resync to the wall clock so rollups stay on real hour/day boundaries across restarts
        self.tick_count = self.schedule.ticks_since_midnight(now)
        self._last_daily_rollup: Optional[datetime.date] = None

        self.history = history or LogHistory()
        self.baseline = Baseline()
        self.reload_history()

        log.info(f"Aggregator ready: tick={config.tick_seconds}s, "
                 f"{self.schedule.ticks_per_hour} ticks/hour, resynced at tick {self.tick_count}")

    # --- Ingestion ---

    def on_request(self, packet: Packet):
        self.request_buffer.append(packet)

    # --- Tick pipeline ---

    def tick(self, now: Optional[datetime.datetime] = None) -> RollupPhase:
        now = now or self._clock()

        # Swap, never merge: packets arriving after this line belong to the next tick
        buffer, self.request_buffer = self.request_buffer, []
        started_at, self._buffer_started_at = self._buffer_started_at, now

        snapshot = Statistics.from_packet_batch(buffer, started_at=started_at, now=now)
        self.latest_history.append(snapshot)
        self.latest_views.append(snapshot.format(self.baseline, self._rng))
        self._pending_hourly.append(snapshot)
        self.tick_count += 1

        phase = self.schedule.phase_for(self.tick_count)
        if phase in (RollupPhase.HOURLY_ROLLUP, RollupPhase.DAILY_ROLLUP):
            self._hourly_rollup(now)
        if phase is RollupPhase.DAILY_ROLLUP:
            self._daily_rollup(now)
        return phase

    def _hourly_rollup(self, now: datetime.datetime):
        hourly = Statistics.from_snapshot_batch(self._pending_hourly, now=now)
        self._pending_hourly = []

        self._persist(hourly, 'hourly', [daily_file_path(self.config.logs_dir, hourly.start_timestamp.date())], now)
        self.hourly_history.append(hourly.format(self.baseline, self._rng))
        self._pending_daily.append(hourly)
        log.debug(f"Hourly rollup: {hourly.total_requests} requests, {hourly.total_errors} errors")

    def _daily_rollup(self, now: datetime.datetime):
        day = (now - datetime.timedelta(seconds=self.schedule.tick_seconds)).date()
        self.tick_count = 0

        if day == self._last_daily_rollup:
            # Guard against re-entry when the counter overshoots the threshold
            log.warning(f"Daily rollup for {format_file_date(day)} already done. Skipping.")
            return

        daily = Statistics.from_snapshot_batch(self._pending_daily, now=now)
        self._pending_daily = []
        self._last_daily_rollup = day

        self._persist(daily, 'overview', [
            daily_file_path(self.config.logs_dir, day),
            overview_file_path(self.config.logs_dir, day),
        ], now)

        log.info("Exporting statistics gathered during the last 24h")
        log.info(f"{daily.total_requests} requests in total, {daily.total_errors} errors "
                 f"({daily.error_percentage:.2%}), average total time {daily.average_total_time:.2f}ms")
        self.reload_history()

    def _persist(self, snapshot: Statistics, label: str, paths: List[str], now: datetime.datetime):
        if self.config.disable_logs:
            return
        for path in paths:
            try:
                snapshot.export(path, label, now=now)
            except OSError as e:
                log.error(f"Failed to persist {label} statistics to '{path}': {e}")

    def reload_history(self):
        self.history.generate(self.config.logs_dir)
        self.baseline = self.history.baseline()
        log.info(f"Baseline refreshed: handle={self.baseline.handle_time}ms, "
                 f"process={self.baseline.process_time}ms, errors={self.baseline.error_percentage}")

    # --- Background task ---

    async def _tick_loop(self):
        log.info("Tick scheduler task started.")
        loop = asyncio.get_running_loop()
        interval = self.schedule.tick_seconds
        next_deadline = loop.time() + interval
        while True:
            await asyncio.sleep(max(0.0, next_deadline - loop.time()))
            next_deadline += interval
            if next_deadline < loop.time():
                log.warning("Tick scheduler fell behind. Skipping missed ticks.")
                next_deadline = loop.time() + interval
            try:
                self.tick()
            except Exception:
                log.error("Error during statistics tick:", exc_info=True)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._tick_loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        log.info("Tick scheduler task cancelled.")

    # --- Read queries ---

    def get_latest(self) -> Dict[str, Any]:
        return _views_response(list(self.latest_views), self._clock())

    def get_hourly(self) -> Dict[str, Any]:
        return _views_response(list(self.hourly_history), self._clock())

    def get_history(self, date: Union[str, datetime.date]) -> Dict[str, Any]:
        if isinstance(date, str):
            try:
                date = parse_query_date(date)
            except ValueError:
                raise HistoryUnavailable(f"Invalid date '{date}', expected DD-MM-YYYY")

        if date == self._clock().date():
            raise HistoryNotYetAvailable(f"Statistics for {format_file_date(date)} are not finalized yet")

        path = daily_file_path(self.config.logs_dir, date)
        if not os.path.isfile(path):
            raise HistoryNotFound(f"No statistics recorded for {format_file_date(date)}")

        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            log.error(f"Could not read history file '{path}': {e}")
            raise HistoryNotFound(f"Statistics for {format_file_date(date)} could not be read")

    def get_requests_per_day(self, authorized: bool) -> List[Dict[str, Any]]:
        return self.history.requests_per_day(normalize=not authorized)

    def get_requests_per_weekday(self, authorized: bool) -> Dict[str, float]:
        return self.history.requests_per_weekday(normalize=not authorized)

    def get_statistics_per_day(self, authorized: bool) -> List[Dict[str, Any]]:
        return self.history.statistics_per_day(normalize=not authorized)
