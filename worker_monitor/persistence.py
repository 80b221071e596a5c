import datetime
import json
import logging
import os
import re
import tempfile
from typing import Any, Optional

log = logging.getLogger("WorkerMonitor.Persistence")

DATE_FORMAT = '%d-%m-%Y'
RANGE_TIMESTAMP_FORMAT = '%d/%m/%Y %H:%M:%S'
ERROR_TRAIL_FORMAT = '%d-%m-%Y_%H-%M-%S'
OVERVIEW_SUFFIX = '-overview'

FILE_DATE_RE = re.compile(r'^(\d{2})-(\d{2})-(\d{4})(?:-overview)?\.json$')


def format_file_date(date: datetime.date) -> str:
    return date.strftime(DATE_FORMAT)


def daily_file_path(logs_dir: str, date: datetime.date) -> str:
    return os.path.join(logs_dir, f"{format_file_date(date)}.json")


def overview_file_path(logs_dir: str, date: datetime.date) -> str:
    return os.path.join(logs_dir, f"{format_file_date(date)}{OVERVIEW_SUFFIX}.json")


def parse_file_date(file_name: str) -> Optional[datetime.date]:
    """Extracts the date from 'DD-MM-YYYY.json' or 'DD-MM-YYYY-overview.json'."""
    match = FILE_DATE_RE.match(os.path.basename(file_name))
    if not match:
        return None
    day, month, year = (int(part) for part in match.groups())
    try:
        return datetime.date(year, month, day)
    except ValueError:
        return None


def parse_query_date(value: str) -> datetime.date:
    """Parses a 'DD-MM-YYYY' query date. Raises ValueError on bad input."""
    return datetime.datetime.strptime(value.strip(), DATE_FORMAT).date()


def format_range_key(start: datetime.datetime, end: datetime.datetime) -> str:
    return f"{start.strftime(RANGE_TIMESTAMP_FORMAT)} - {end.strftime(RANGE_TIMESTAMP_FORMAT)}"


def load_document(path: str) -> dict[str, Any]:
    """
    Loads a day document for read-modify-write.

    A missing file yields an empty document. A file that does not hold a JSON
    object is moved aside to '<path>.corrupt' so the next write starts clean
    instead of failing on every tick.
    """
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            document = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        log.warning(f"Statistics file '{path}' is corrupted ({e}). Moving it aside.")
        os.replace(path, f"{path}.corrupt")
        return {}
    if not isinstance(document, dict):
        log.warning(f"Statistics file '{path}' does not hold an object. Moving it aside.")
        os.replace(path, f"{path}.corrupt")
        return {}
    return document


def write_document(path: str, document: dict[str, Any]):
    """Writes JSON to a temp file in the target directory and renames it over the target."""
    directory = os.path.dirname(path) or '.'
    fd, tmp_path = tempfile.mkstemp(prefix='.tmp-', suffix='.json', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(document, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def write_error_trail(logs_dir: str, payload: str, now: Optional[datetime.datetime] = None) -> str:
    """Persists one stderr event as its own text file and returns the path."""
    now = now or datetime.datetime.now()
    base = os.path.join(logs_dir, f"error {now.strftime(ERROR_TRAIL_FORMAT)}")
    path, counter = f"{base}.txt", 1
    while os.path.exists(path):
        path = f"{base}_{counter}.txt"
        counter += 1
    with open(path, 'w', encoding='utf-8') as f:
        f.write(payload)
    return path


def ensure_logs_directory(logs_dir: str) -> bool:
    """Warns when the logs directory is missing. Writes will fail later if it never appears."""
    if os.path.isdir(logs_dir):
        return True
    log.warning(f"Logs directory '{os.path.abspath(logs_dir)}' does not exist. "
                f"Statistics and error trails cannot be persisted until it is created.")
    return False
