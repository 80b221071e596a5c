"""
Tests for rebuilding history from persisted day files and the views derived from it.
"""

import datetime

import pytest

from worker_monitor.config import DEFAULT_ERROR_PERCENTAGE, DEFAULT_HANDLE_TIME, DEFAULT_PROCESS_TIME
from worker_monitor.log_history import WEEKDAYS, LogHistory, empty_log_data


MONDAY_1 = datetime.date(2026, 10, 5)
MONDAY_2 = datetime.date(2026, 10, 12)
TUESDAY = datetime.date(2026, 10, 13)
RANGE = "12/10/2026 00:00:00 - 13/10/2026 00:00:00"


@pytest.fixture
def two_mondays(logs_dir, make_day_file, make_log_data):
    make_day_file(logs_dir, MONDAY_1, {"r1": make_log_data(10)})
    make_day_file(logs_dir, MONDAY_2, {"r2": make_log_data(30)})
    return logs_dir


class TestGenerate:

    def test_entries_are_sorted_by_date(self, logs_dir, make_day_file, make_log_data):
        make_day_file(logs_dir, TUESDAY, {RANGE: make_log_data(5)})
        make_day_file(logs_dir, MONDAY_1, {RANGE: make_log_data(7)})

        history = LogHistory().generate(str(logs_dir))

        assert [entry["date"] for entry in history.entries] == [MONDAY_1, TUESDAY]

    def test_missing_directory_gives_empty_history(self, tmp_path):
        history = LogHistory().generate(str(tmp_path / "nope"))

        assert history.entries == []

    def test_unrelated_files_are_ignored(self, logs_dir, make_day_file, make_log_data):
        make_day_file(logs_dir, MONDAY_1, {RANGE: make_log_data(7)})
        (logs_dir / "notes.json").write_text("{}")
        (logs_dir / "error 12-10-2026_10-00-00.txt").write_text("boom")
        (logs_dir / "31-02-2026.json").write_text("{}")

        history = LogHistory().generate(str(logs_dir))

        assert len(history.entries) == 1

    def test_malformed_file_is_skipped(self, logs_dir, make_day_file, make_log_data):
        make_day_file(logs_dir, MONDAY_1, {RANGE: make_log_data(7)})
        (logs_dir / "12-10-2026.json").write_text("{broken")
        (logs_dir / "13-10-2026.json").write_text('{"overview": {"r": "not an object"}}')

        history = LogHistory().generate(str(logs_dir))

        assert [entry["date"] for entry in history.entries] == [MONDAY_1]

    def test_null_entry_becomes_zeroed_record(self, logs_dir, make_day_file):
        make_day_file(logs_dir, MONDAY_1, {RANGE: None})

        history = LogHistory().generate(str(logs_dir))

        assert history.entries == [{"date": MONDAY_1, "data": empty_log_data()}]

    def test_hourly_section_is_ignored(self, logs_dir, make_day_file, make_log_data):
        make_day_file(logs_dir, MONDAY_1, overview={}, hourly={RANGE: make_log_data(99)})

        history = LogHistory().generate(str(logs_dir))

        assert history.entries == []

    def test_overview_sibling_does_not_duplicate_entries(self, logs_dir, make_day_file, make_log_data):
        make_day_file(logs_dir, MONDAY_2, {RANGE: make_log_data(30)})
        make_day_file(logs_dir, MONDAY_2, {RANGE: make_log_data(30)}, suffix="-overview")

        history = LogHistory().generate(str(logs_dir))

        assert len(history.entries) == 1

    def test_partial_rows_are_filled_in(self, logs_dir, make_day_file):
        make_day_file(logs_dir, MONDAY_1, {RANGE: {"overview": {"totalRequests": 4}}})

        entry = LogHistory().generate(str(logs_dir)).entries[0]

        assert entry["data"]["overview"] == {"totalRequests": 4, "totalErrors": 0, "errorPercentage": 0}
        assert entry["data"]["timings"]["averageHandleTime"] == 0

    def test_generate_replaces_previous_entries(self, logs_dir, make_day_file, make_log_data):
        history = LogHistory()
        make_day_file(logs_dir, MONDAY_1, {RANGE: make_log_data(7)})
        history.generate(str(logs_dir))

        (logs_dir / "05-10-2026.json").unlink()
        history.generate(str(logs_dir))

        assert history.entries == []


class TestWeekdayViews:

    def test_map_by_weekday_has_every_day(self, two_mondays):
        mapping = LogHistory().generate(str(two_mondays)).map_by_weekday()

        assert list(mapping) == WEEKDAYS
        assert len(mapping["Monday"]) == 2
        assert mapping["Sunday"] == []

    def test_requests_per_weekday_is_mean_per_day(self, two_mondays):
        per_weekday = LogHistory().generate(str(two_mondays)).requests_per_weekday()

        assert per_weekday["Monday"] == 20
        assert all(per_weekday[day] == 0 for day in WEEKDAYS if day != "Monday")

    def test_normalized_weekdays_are_fractions(self, two_mondays, make_day_file, make_log_data):
        per_weekday = LogHistory().generate(str(two_mondays)).requests_per_weekday(normalize=True)

        assert per_weekday["Monday"] == 1.0
        assert sum(per_weekday.values()) == 1.0

        make_day_file(two_mondays, TUESDAY, {RANGE: make_log_data(60)})
        per_weekday = LogHistory().generate(str(two_mondays)).requests_per_weekday(normalize=True)

        assert per_weekday["Monday"] == 0.25
        assert per_weekday["Tuesday"] == 0.75

    def test_normalized_week_sums_to_one(self, logs_dir, make_day_file, make_log_data):
        for offset in range(7):
            make_day_file(logs_dir, MONDAY_1 + datetime.timedelta(days=offset), {RANGE: make_log_data(10)})

        per_weekday = LogHistory().generate(str(logs_dir)).requests_per_weekday(normalize=True)

        assert round(sum(per_weekday.values()), 2) == 1.0
        assert [per_weekday[day] for day in WEEKDAYS] == [0.15, 0.15, 0.14, 0.14, 0.14, 0.14, 0.14]

    def test_normalized_thirds_keep_the_whole(self, logs_dir, make_day_file, make_log_data):
        make_day_file(logs_dir, MONDAY_1, {RANGE: make_log_data(10)})
        make_day_file(logs_dir, TUESDAY, {RANGE: make_log_data(20)})

        per_weekday = LogHistory().generate(str(logs_dir)).requests_per_weekday(normalize=True)

        assert (per_weekday["Monday"], per_weekday["Tuesday"]) == (0.33, 0.67)
        assert round(sum(per_weekday.values()), 2) == 1.0

    def test_normalized_weekdays_without_history_are_zero(self):
        assert set(LogHistory().requests_per_weekday(normalize=True).values()) == {0}


class TestDailyViews:

    def test_requests_per_day_sums_ranges_of_same_date(self, logs_dir, make_day_file, make_log_data):
        make_day_file(logs_dir, MONDAY_1, {"a": make_log_data(10), "b": make_log_data(5)})
        make_day_file(logs_dir, TUESDAY, {RANGE: make_log_data(15)})

        history = LogHistory().generate(str(logs_dir))

        assert history.requests_per_day() == [
            {"date": "2026-10-05", "totalRequests": 15},
            {"date": "2026-10-13", "totalRequests": 15},
        ]
        assert [row["totalRequests"] for row in history.requests_per_day(normalize=True)] == [0.5, 0.5]

    def test_normalized_days_sum_to_one(self, logs_dir, make_day_file, make_log_data):
        for offset in range(3):
            make_day_file(logs_dir, MONDAY_1 + datetime.timedelta(days=offset), {RANGE: make_log_data(10)})

        shares = [row["totalRequests"] for row in LogHistory().generate(str(logs_dir)).requests_per_day(normalize=True)]

        assert shares == [0.34, 0.33, 0.33]
        assert round(sum(shares), 2) == 1.0

    def test_statistics_per_day_raw(self, two_mondays):
        rows = LogHistory().generate(str(two_mondays)).statistics_per_day()

        assert rows[0]["date"] == "2026-10-05"
        assert rows[0]["data"]["overview"]["totalRequests"] == 10

    def test_statistics_per_day_normalized_hides_counts(self, logs_dir, make_day_file, make_log_data):
        make_day_file(logs_dir, MONDAY_1, {RANGE: make_log_data(10, total_errors=5, handle=120.0)})

        rows = LogHistory().generate(str(logs_dir)).statistics_per_day(normalize=True)

        data = rows[0]["data"]
        assert "totalRequests" not in data
        assert "overview" not in data
        assert data["averageHandleTime"] == 120.0
        assert data["errorPercentage"] == 0.5


class TestBaseline:

    def test_average_timings_without_history_is_none(self):
        assert LogHistory().average_timings() is None

    def test_average_timings(self, logs_dir, make_day_file, make_log_data):
        make_day_file(logs_dir, MONDAY_1, {RANGE: make_log_data(10, total_errors=1, handle=100.0, process=10.0)})
        make_day_file(logs_dir, TUESDAY, {RANGE: make_log_data(20, total_errors=0, handle=200.0, process=30.0)})

        averages = LogHistory().generate(str(logs_dir)).average_timings()

        assert averages["overview"] == {"totalRequests": 15, "totalErrors": 0.5, "errorPercentage": 0.05}
        assert averages["timings"]["averageHandleTime"] == 150
        assert averages["timings"]["averageProcessTime"] == 20

    def test_baseline_uses_history(self, logs_dir, make_day_file, make_log_data):
        make_day_file(logs_dir, MONDAY_1, {RANGE: make_log_data(10, total_errors=1, handle=80.0, process=8.0)})

        baseline = LogHistory().generate(str(logs_dir)).baseline()

        assert baseline.handle_time == 80
        assert baseline.process_time == 8
        assert baseline.error_percentage == 0.1

    def test_baseline_falls_back_to_defaults(self, logs_dir, make_day_file):
        make_day_file(logs_dir, MONDAY_1, {RANGE: None})

        baseline = LogHistory().generate(str(logs_dir)).baseline()

        assert baseline.handle_time == DEFAULT_HANDLE_TIME
        assert baseline.process_time == DEFAULT_PROCESS_TIME
        assert baseline.error_percentage == DEFAULT_ERROR_PERCENTAGE
