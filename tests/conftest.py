"""Test fixtures for flat-file backfill tests."""
import io
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set
from unittest.mock import MagicMock

import pytest

from common.models.data_models import (
    DateProgress,
    DateStatus,
    IngestionJob,
    JobStatus,
)
from flatfiles.calendar import flatfile_key
from flatfiles.errors import BulkLoadError, ObjectNotFoundError

CSV_HEADER = "ticker,volume,open,close,high,low,window_start,transactions,vwap"


def make_day_csv(trade_date: date, count: int = 100, extra_lines: Iterable[str] = ()) -> bytes:
    """Build a day_aggs CSV with ``count`` tickers for one date."""
    window_start = int(datetime(trade_date.year, trade_date.month, trade_date.day,
                                5, 0, tzinfo=timezone.utc).timestamp()) * 1_000_000_000
    lines = [CSV_HEADER]
    for i in range(count):
        price = 10.0 + i
        lines.append(f"T{i:04d},{1000 + i},{price},{price + 0.5},{price + 1},{price - 1},{window_start},{50 + i},{price + 0.25}")
    lines.extend(extra_lines)
    return ("\n".join(lines) + "\n").encode('utf-8')


# Mock classes (importable for direct instantiation in tests)
class FakeStorageClient:
    """
    In-memory flat files client.

    Keys absent from ``files`` raise ObjectNotFoundError. Tracks the number of
    concurrent downloads so tests can assert the concurrency bound.
    """

    def __init__(self, files: Optional[Dict[str, bytes]] = None, delay: float = 0.0,
                 connected: bool = True, errors: Optional[Dict[str, Exception]] = None):
        self.files = dict(files or {})
        self.errors = dict(errors or {})
        self.delay = delay
        self.connected = connected
        self.requested: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.connection_checks = 0
        self._lock = threading.Lock()

    def add_day(self, data_type: str, trade_date: date, payload: bytes, market: str = 'us_stocks_sip'):
        self.files[flatfile_key(data_type, trade_date, market)] = payload

    def download_with_retry(self, key: str):
        with self._lock:
            self.requested.append(key)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if key in self.errors:
                raise self.errors[key]
            if key not in self.files:
                raise ObjectNotFoundError(key)
            return io.BytesIO(self.files[key])
        finally:
            with self._lock:
                self.in_flight -= 1

    def test_connection(self) -> bool:
        self.connection_checks += 1
        return self.connected


class FakeJobStore:
    """In-memory JobStore recording every progress transition."""

    def __init__(self):
        self.jobs: Dict[str, IngestionJob] = {}
        self.progress: Dict[tuple, DateProgress] = {}
        self.transitions: List[tuple] = []
        self._lock = threading.Lock()

    def create_job(self, data_type, start_date, end_date, concurrency, dates, dry_run=False):
        job = IngestionJob(
            id=uuid.uuid4().hex,
            data_type=data_type,
            start_date=start_date,
            end_date=end_date,
            concurrency=concurrency,
            total_dates=len(dates),
            dry_run=dry_run,
            started_at=datetime.utcnow(),
        )
        with self._lock:
            self.jobs[job.id] = job
            for d in dates:
                self.progress[(job.id, d)] = DateProgress(job.id, d)
        return job

    def _set(self, job_id, trade_date, status, **fields):
        with self._lock:
            row = self.progress[(job_id, trade_date)]
            row.status = status
            for name, value in fields.items():
                setattr(row, name, value)
            self.transitions.append((trade_date, status))

    def mark_downloading(self, job_id, trade_date):
        self._set(job_id, trade_date, DateStatus.DOWNLOADING)

    def mark_completed(self, job_id, trade_date, records, duration_ms):
        self._set(job_id, trade_date, DateStatus.COMPLETED, records_processed=records, duration_ms=duration_ms)

    def mark_failed(self, job_id, trade_date, error_message, duration_ms):
        self._set(job_id, trade_date, DateStatus.FAILED, error_message=error_message[:500],
                  duration_ms=duration_ms)

    def finalize_job(self, job_id, status, completed, failed, total_records):
        job = self.jobs[job_id]
        job.status = JobStatus(status)
        job.completed_dates = completed
        job.failed_dates = failed
        job.total_records = total_records
        job.completed_at = datetime.utcnow()

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def rows(self, job_id) -> List[DateProgress]:
        return sorted((p for (j, _), p in self.progress.items() if j == job_id), key=lambda p: p.trade_date)

    def get_resumable_dates(self, job_id):
        return [p.trade_date for p in self.rows(job_id) if p.status is not DateStatus.COMPLETED]


class FakeLoader:
    """Bulk loader keeping prices in a dict keyed by (ticker, ts, granularity)."""

    def __init__(self, fail_tickers: Optional[Set[str]] = None):
        self.prices: Dict[tuple, object] = {}
        self.calls = 0
        self.fail_tickers = fail_tickers or set()
        self._lock = threading.Lock()

    def bulk_upsert(self, records, granularity):
        with self._lock:
            self.calls += 1
            if any(r.ticker in self.fail_tickers for r in records):
                raise BulkLoadError("Bulk load of records failed: simulated constraint violation")
            for r in records:
                self.prices[(r.ticker, r.timestamp, granularity)] = r
        return len(records)


class FakePool:
    """Connection pool stand-in exposing one MagicMock connection/cursor."""

    def __init__(self):
        self.conn = MagicMock(name='connection')
        self.cursor = self.conn.cursor.return_value

    @contextmanager
    def get_connection(self):
        try:
            yield self.conn
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise


# Fixtures
@pytest.fixture
def job_store():
    """In-memory job store fixture."""
    return FakeJobStore()


@pytest.fixture
def loader():
    """In-memory price loader fixture."""
    return FakeLoader()


@pytest.fixture
def fake_pool():
    """MagicMock-backed connection pool fixture."""
    return FakePool()


@pytest.fixture
def week_of_files():
    """
    Mon-Fri 2024-03-11..15 with Wednesday missing (market holiday stand-in).

    Returns (storage, dates, missing_date).
    """
    dates = [date(2024, 3, 11) + timedelta(days=i) for i in range(5)]
    missing = date(2024, 3, 13)
    storage = FakeStorageClient()
    for d in dates:
        if d != missing:
            storage.add_day('day_aggs_v1', d, make_day_csv(d, 100))
    return storage, dates, missing
