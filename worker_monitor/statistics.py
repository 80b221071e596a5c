"""
Statistics reducer.

A Statistics snapshot summarises one window of traffic. Snapshots are built
either from raw packets (one tick) or from earlier snapshots (hourly and
daily rollups) and are immutable once published by the aggregator.
"""

import datetime
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from .config import (
    DEFAULT_HANDLE_TIME,
    DEFAULT_PROCESS_TIME,
    DEFAULT_ERROR_PERCENTAGE,
    BACKFILL_NOISE_RATIO,
    BACKFILL_MIN_MAX_SPREAD,
)
from .packets import Packet, MultipartNetworkRequest
from .persistence import format_range_key, load_document, write_document

log = logging.getLogger("WorkerMonitor.Statistics")


@dataclass(frozen=True)
class Baseline:
    """Long-run averages used to backfill windows without real samples."""
    handle_time: float = DEFAULT_HANDLE_TIME
    process_time: float = DEFAULT_PROCESS_TIME
    error_percentage: float = DEFAULT_ERROR_PERCENTAGE


def with_noise(value: float, rng: random.Random, ratio: float = BACKFILL_NOISE_RATIO) -> float:
    """Returns value shifted by a uniform random amount within +-ratio of itself."""
    return round(value + rng.uniform(-1, 1) * value * ratio, 2)


def _merge_min(current: Optional[float], candidate: Optional[float]) -> Optional[float]:
    if candidate is None:
        return current
    return candidate if current is None or candidate < current else current


def _merge_max(current: Optional[float], candidate: Optional[float]) -> Optional[float]:
    if candidate is None:
        return current
    return candidate if current is None or candidate > current else current


@dataclass(frozen=True)
class StatisticsView:
    timestamp: datetime.datetime
    average_handle_time: float
    min_max_handle_time: tuple[float, float]
    average_process_time: float
    min_max_process_time: tuple[float, float]
    error_percentage: float

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'averageHandleTime': self.average_handle_time,
            'minMaxHandleTime': list(self.min_max_handle_time),
            'averageProcessTime': self.average_process_time,
            'minMaxProcessTime': list(self.min_max_process_time),
            'errorPercentage': self.error_percentage,
        }


@dataclass
class Statistics:
    start_timestamp: datetime.datetime = field(default_factory=datetime.datetime.now)
    end_timestamp: Optional[datetime.datetime] = None

    total_requests: int = 0
    total_errors: int = 0
    multipart_count: int = 0
    error_map: Counter = field(default_factory=Counter)

    total_time_sum: float = 0.0
    min_total_time: Optional[float] = None
    max_total_time: Optional[float] = None

    handle_time_sum: float = 0.0
    min_handle_time: Optional[float] = None
    max_handle_time: Optional[float] = None

    processing_time_sum: float = 0.0
    min_processing_time: Optional[float] = None
    max_processing_time: Optional[float] = None

    # Finalized after a reduction; multipart averages stay None without samples
    average_total_time: float = 0.0
    average_handle_time: Optional[float] = None
    average_process_time: Optional[float] = None

    @classmethod
    def from_packet_batch(cls, batch: Iterable[Packet],
                          started_at: Optional[datetime.datetime] = None,
                          now: Optional[datetime.datetime] = None) -> 'Statistics':
        now = now or datetime.datetime.now()
        stats = cls(start_timestamp=started_at or now)

        for packet in batch:
            stats.total_requests += 1
            stats.total_time_sum += packet.total_time
            stats.min_total_time = _merge_min(stats.min_total_time, packet.total_time)
            stats.max_total_time = _merge_max(stats.max_total_time, packet.total_time)

            if packet.error:
                stats.total_errors += 1
                stats.error_map[packet.error] += 1

            if isinstance(packet, MultipartNetworkRequest):
                stats.multipart_count += 1
                stats.handle_time_sum += packet.handle_time
                stats.min_handle_time = _merge_min(stats.min_handle_time, packet.handle_time)
                stats.max_handle_time = _merge_max(stats.max_handle_time, packet.handle_time)
                stats.processing_time_sum += packet.processing_time
                stats.min_processing_time = _merge_min(stats.min_processing_time, packet.processing_time)
                stats.max_processing_time = _merge_max(stats.max_processing_time, packet.processing_time)

        if stats.total_requests:
            stats.average_total_time = stats.total_time_sum / stats.total_requests
        if stats.multipart_count:
            stats.average_handle_time = stats.handle_time_sum / stats.multipart_count
            stats.average_process_time = stats.processing_time_sum / stats.multipart_count

        stats.end_timestamp = now
        return stats

    @classmethod
    def from_snapshot_batch(cls, batch: Sequence['Statistics'],
                            now: Optional[datetime.datetime] = None) -> 'Statistics':
        """
        Rolls child snapshots up into one parent.

        Counts, sums and error maps add up and min/max merge pairwise. The
        averages are the mean of the children's averages: total time over
        every child, handle/process time over the children that saw
        multipart traffic.
        """
        if not batch:
            now = now or datetime.datetime.now()
            return cls(start_timestamp=now, end_timestamp=now)

        stats = cls(start_timestamp=batch[0].start_timestamp,
                    end_timestamp=batch[-1].end_timestamp or now or datetime.datetime.now())
        average_total_sum = 0.0
        average_handle_sum = 0.0
        average_process_sum = 0.0
        multipart_children = 0

        for child in batch:
            stats.total_requests += child.total_requests
            stats.total_errors += child.total_errors
            stats.multipart_count += child.multipart_count
            stats.error_map.update(child.error_map)

            stats.total_time_sum += child.total_time_sum
            stats.handle_time_sum += child.handle_time_sum
            stats.processing_time_sum += child.processing_time_sum

            stats.min_total_time = _merge_min(stats.min_total_time, child.min_total_time)
            stats.max_total_time = _merge_max(stats.max_total_time, child.max_total_time)
            stats.min_handle_time = _merge_min(stats.min_handle_time, child.min_handle_time)
            stats.max_handle_time = _merge_max(stats.max_handle_time, child.max_handle_time)
            stats.min_processing_time = _merge_min(stats.min_processing_time, child.min_processing_time)
            stats.max_processing_time = _merge_max(stats.max_processing_time, child.max_processing_time)

            average_total_sum += child.average_total_time
            if child.multipart_count > 0:
                multipart_children += 1
                average_handle_sum += child.average_handle_time or 0.0
                average_process_sum += child.average_process_time or 0.0

        stats.average_total_time = average_total_sum / len(batch)
        if multipart_children:
            stats.average_handle_time = average_handle_sum / multipart_children
            stats.average_process_time = average_process_sum / multipart_children

        return stats

    @property
    def error_percentage(self) -> float:
        if not self.total_requests:
            return 0.0
        return round(self.total_errors / self.total_requests, 2)

    def range_key(self, now: Optional[datetime.datetime] = None) -> str:
        end = self.end_timestamp or now or datetime.datetime.now()
        return format_range_key(self.start_timestamp, end)

    def format(self, baseline: Optional[Baseline] = None,
               rng: Optional[random.Random] = None) -> StatisticsView:
        """
        Projects the snapshot onto the public view.

        Measures without real samples are synthesized from the baseline with
        bounded noise so charts never show holes or hard zeros.
        """
        baseline = baseline or Baseline()
        rng = rng or random.Random()

        if self.multipart_count:
            handle_time = round(self.average_handle_time, 2)
            handle_range = (self.min_handle_time, self.max_handle_time)
            process_time = round(self.average_process_time, 2)
            process_range = (self.min_processing_time, self.max_processing_time)
        else:
            handle_time = with_noise(baseline.handle_time, rng)
            handle_range = (
                with_noise(max(handle_time - BACKFILL_MIN_MAX_SPREAD, 0.0), rng),
                with_noise(handle_time + BACKFILL_MIN_MAX_SPREAD, rng),
            )
            process_time = with_noise(baseline.process_time, rng)
            process_range = (
                with_noise(max(process_time - BACKFILL_MIN_MAX_SPREAD, 0.0), rng),
                with_noise(process_time + BACKFILL_MIN_MAX_SPREAD, rng),
            )

        if self.total_requests:
            error_percentage = self.error_percentage
        else:
            error_percentage = with_noise(baseline.error_percentage, rng)

        return StatisticsView(
            timestamp=self.start_timestamp,
            average_handle_time=handle_time,
            min_max_handle_time=handle_range,
            average_process_time=process_time,
            min_max_process_time=process_range,
            error_percentage=error_percentage,
        )

    def to_log_data(self) -> dict:
        return {
            'overview': {
                'totalRequests': self.total_requests,
                'totalErrors': self.total_errors,
                'errorPercentage': self.error_percentage,
            },
            'timings': {
                'averageTotalTime': round(self.average_total_time, 2),
                'minMaxTotalTime': [self.min_total_time, self.max_total_time],
                'averageHandleTime': round(self.average_handle_time or 0.0, 2),
                'minMaxHandleTime': [self.min_handle_time, self.max_handle_time],
                'averageProcessTime': round(self.average_process_time or 0.0, 2),
                'minMaxProcessTime': [self.min_processing_time, self.max_processing_time],
            },
            'errorMap': {str(code): count for code, count in sorted(self.error_map.items())},
        }

    def export(self, path: str, label: str, now: Optional[datetime.datetime] = None):
        """Inserts this snapshot under document[label][range] and rewrites the file."""
        document = load_document(path)
        section = document.get(label)
        if not isinstance(section, dict):
            section = document[label] = {}
        section[self.range_key(now)] = self.to_log_data() if self.total_requests > 0 else None
        write_document(path, document)
        log.debug(f"Exported {label} statistics ({self.total_requests} requests) to '{path}'")
