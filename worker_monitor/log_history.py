"""
Log History

Rebuilds the day-by-day history from persisted statistics files and derives
the read views served to clients: weekday averages, per-day totals and the
all-time baseline used to backfill empty windows.
"""

import datetime
import json
import logging
import math
import os
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from .config import DEFAULT_HANDLE_TIME, DEFAULT_PROCESS_TIME, DEFAULT_ERROR_PERCENTAGE
from .errors import PersistenceCorruption
from .persistence import parse_file_date
from .statistics import Baseline

log = logging.getLogger("WorkerMonitor.LogHistory")

WEEKDAYS = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']

TIMING_FIELDS = ('averageTotalTime', 'averageHandleTime', 'averageProcessTime')
OVERVIEW_FIELDS = ('totalRequests', 'totalErrors', 'errorPercentage')


def empty_log_data() -> Dict[str, Any]:
    return {
        'overview': {'totalRequests': 0, 'totalErrors': 0, 'errorPercentage': 0},
        'timings': {'averageTotalTime': 0, 'averageHandleTime': 0, 'averageProcessTime': 0},
        'errorMap': {},
    }


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return value


def _normalize_log_data(data: Any) -> Dict[str, Any]:
    """Fills in missing sections so the views never have to guard against partial rows."""
    if not isinstance(data, dict):
        raise ValueError(f"entry is not an object: {data!r}")
    result = empty_log_data()
    overview = data.get('overview') or {}
    timings = data.get('timings') or {}
    if not isinstance(overview, dict) or not isinstance(timings, dict):
        raise ValueError("overview/timings must be objects")
    for key in OVERVIEW_FIELDS:
        result['overview'][key] = _number(overview.get(key))
    result['timings'].update(timings)
    for key in TIMING_FIELDS:
        result['timings'][key] = _number(timings.get(key))
    error_map = data.get('errorMap') or {}
    result['errorMap'] = dict(error_map) if isinstance(error_map, dict) else {}
    return result


def _hundredth_shares(values: List[float]) -> List[float]:
    """
    Each value's share of the total in hundredths, summing to exactly 1.00.

    Shares are floored to the hundredth and the leftover hundredths go to the
    largest remainders (ties in input order).
    """
    total = sum(values)
    if not total:
        return [0.0 for _ in values]
    scaled = [value * 100 / total for value in values]
    hundredths = [math.floor(share) for share in scaled]
    leftover = 100 - sum(hundredths)
    by_remainder = sorted(range(len(values)), key=lambda i: scaled[i] - hundredths[i], reverse=True)
    for i in by_remainder[:leftover]:
        hundredths[i] += 1
    return [count / 100 for count in hundredths]


class LogHistory:
    """
    Ordered history of daily overview records.

    `entries` is rebuilt wholesale by every `generate()` call; there is no
    incremental update.
    """

    def __init__(self):
        self.entries: List[Dict[str, Any]] = []

    def generate(self, directory: str) -> 'LogHistory':
        entries: 'OrderedDict[tuple, Dict[str, Any]]' = OrderedDict()

        try:
            file_names = sorted(os.listdir(directory))
        except FileNotFoundError:
            log.warning(f"History directory '{directory}' does not exist. Starting with empty history.")
            self.entries = []
            return self

        for file_name in file_names:
            date = parse_file_date(file_name)
            if date is None:
                continue
            try:
                for range_key, data in self._read_overview(os.path.join(directory, file_name)):
                    # Daily rollups land in both the day file and its -overview sibling
                    entries.setdefault((date, range_key), {'date': date, 'data': data})
            except PersistenceCorruption as e:
                log.warning(f"Skipping history file: {e}")

        self.entries = sorted(entries.values(), key=lambda entry: entry['date'])
        log.info(f"Loaded {len(self.entries)} history entries from '{directory}'")
        return self

    @staticmethod
    def _read_overview(path: str) -> List[tuple]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PersistenceCorruption(path, str(e)) from e

        if not isinstance(document, dict):
            raise PersistenceCorruption(path, "top level is not an object")
        overview = document.get('overview')
        if not overview:
            return []
        if not isinstance(overview, dict):
            raise PersistenceCorruption(path, "'overview' is not an object")

        rows = []
        for range_key, data in overview.items():
            if data is None:
                rows.append((range_key, empty_log_data()))
                continue
            try:
                rows.append((range_key, _normalize_log_data(data)))
            except ValueError as e:
                raise PersistenceCorruption(path, f"entry '{range_key}': {e}") from e
        return rows

    def map_by_weekday(self) -> Dict[str, List[Dict[str, Any]]]:
        result: Dict[str, List[Dict[str, Any]]] = {weekday: [] for weekday in WEEKDAYS}
        for entry in self.entries:
            result[WEEKDAYS[entry['date'].weekday()]].append(entry['data'])
        return result

    def requests_per_weekday(self, normalize: bool = False) -> Dict[str, float]:
        """Mean requests per weekday, or each weekday's share of the weekly total."""
        result = {}
        for weekday, rows in self.map_by_weekday().items():
            if rows:
                result[weekday] = sum(row['overview']['totalRequests'] for row in rows) / len(rows)
            else:
                result[weekday] = 0

        if normalize:
            result = dict(zip(result, _hundredth_shares(list(result.values()))))
        return result

    def requests_per_day(self, normalize: bool = False) -> List[Dict[str, Any]]:
        totals: 'OrderedDict[datetime.date, float]' = OrderedDict()
        for entry in self.entries:
            totals[entry['date']] = totals.get(entry['date'], 0) + entry['data']['overview']['totalRequests']

        values = list(totals.values())
        if normalize:
            values = _hundredth_shares(values)
        return [{'date': date.isoformat(), 'totalRequests': value} for date, value in zip(totals, values)]

    def statistics_per_day(self, normalize: bool = False) -> List[Dict[str, Any]]:
        if not normalize:
            return [{'date': entry['date'].isoformat(), 'data': entry['data']} for entry in self.entries]

        # Request and error counts are private; only timings and the error ratio are shared
        return [
            {
                'date': entry['date'].isoformat(),
                'data': {
                    **entry['data']['timings'],
                    'errorPercentage': entry['data']['overview']['errorPercentage'],
                },
            }
            for entry in self.entries
        ]

    def average_timings(self) -> Optional[Dict[str, Dict[str, float]]]:
        """All-time mean of the overview and timing fields, or None without history."""
        if not self.entries:
            return None

        count = len(self.entries)
        overview = {key: 0.0 for key in OVERVIEW_FIELDS}
        timings = {key: 0.0 for key in TIMING_FIELDS}
        for entry in self.entries:
            for key in OVERVIEW_FIELDS:
                overview[key] += entry['data']['overview'][key]
            for key in TIMING_FIELDS:
                timings[key] += entry['data']['timings'][key]

        return {
            'overview': {
                'totalRequests': round(overview['totalRequests'] / count, 2),
                'totalErrors': round(overview['totalErrors'] / count, 2),
                'errorPercentage': round(overview['errorPercentage'] / count, 4),
            },
            'timings': {key: round(value / count, 2) for key, value in timings.items()},
        }

    def baseline(self) -> Baseline:
        averages = self.average_timings()
        if averages is None:
            return Baseline()
        return Baseline(
            handle_time=averages['timings']['averageHandleTime'] or DEFAULT_HANDLE_TIME,
            process_time=averages['timings']['averageProcessTime'] or DEFAULT_PROCESS_TIME,
            error_percentage=averages['overview']['errorPercentage'] or DEFAULT_ERROR_PERCENTAGE,
        )
