"""Tests for the PostgreSQL storage layer (SQL sequencing against a mocked connection)."""
import csv
import io
import threading
import time
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from common.models.data_models import DateStatus, Granularity, JobStatus, PriceBar
from flatfiles.errors import BulkLoadError, ConnectivityError
from storage.interfaces import InstrumentStore, JobStore, PriceBarLoader
from storage.timescale.instrument_cache import InstrumentIdCache
from storage.timescale.pool import PostgresConnectionPool
from storage.timescale.repositories.jobs import JobRepository
from storage.timescale.repositories.price_history import (
    COPY_SQL,
    CREATE_STAGING_SQL,
    MERGE_SQL,
    REFRESH_INSTRUMENTS_SQL,
    PriceHistoryRepository,
)
from storage.timescale.schema import SchemaManager
from storage.timescale.writer import TimescaleWriter

TS = datetime(2024, 3, 11, 5, 0, tzinfo=timezone.utc)


def bar(ticker, ts=TS, close=10.0, vwap=None):
    return PriceBar(ticker=ticker, timestamp=ts, open=9.0, high=11.0, low=8.5, close=close,
                    volume=100, vwap=vwap, transactions=None)


class StaticCache:
    def __init__(self, ids):
        self.ids = ids
        self.calls = 0

    def resolve(self, symbols):
        self.calls += 1
        return {s: self.ids[s] for s in set(symbols)}


class TestPriceHistoryRepository:
    """COPY staging + merge in one transaction."""

    def test_copy_path_statement_order(self, fake_pool):
        fake_pool.cursor.rowcount = 2
        repo = PriceHistoryRepository(fake_pool, StaticCache({'AAPL': 1, 'MSFT': 2}))

        affected = repo.bulk_upsert([bar('AAPL', vwap=10.1), bar('MSFT')], Granularity.DAY)

        assert affected == 2
        executed = [c.args[0] for c in fake_pool.cursor.execute.call_args_list]
        assert executed == [CREATE_STAGING_SQL, MERGE_SQL, REFRESH_INSTRUMENTS_SQL]
        assert 'ON COMMIT DROP' in CREATE_STAGING_SQL
        assert 'ON CONFLICT (instrument_id, ts, granularity) DO UPDATE' in MERGE_SQL

        copy_sql, buffer = fake_pool.cursor.copy_expert.call_args.args
        assert copy_sql == COPY_SQL
        lines = buffer.getvalue().splitlines()
        assert len(lines) == 2
        assert lines[0].startswith('1,2024-03-11T05:00:00+00:00,DAY,9.0,11.0,8.5,10.0,100,10.1,')
        assert lines[1].endswith(',100,,')
        fake_pool.conn.commit.assert_called()
        fake_pool.conn.rollback.assert_not_called()

    def test_minute_granularity_staged(self, fake_pool):
        repo = PriceHistoryRepository(fake_pool, StaticCache({'AAPL': 7}))
        repo.bulk_upsert([bar('AAPL')], Granularity.MINUTE)
        _, buffer = fake_pool.cursor.copy_expert.call_args.args
        assert ',MINUTE,' in buffer.getvalue()

    def test_failure_rolls_back_and_raises(self, fake_pool):
        def execute(query, params=None):
            if query is MERGE_SQL:
                raise psycopg2.DataError('numeric field overflow')

        fake_pool.cursor.execute.side_effect = execute
        repo = PriceHistoryRepository(fake_pool, StaticCache({'AAPL': 1}))

        with pytest.raises(BulkLoadError, match='numeric field overflow'):
            repo.bulk_upsert([bar('AAPL')])

        fake_pool.conn.rollback.assert_called_once()
        fake_pool.conn.commit.assert_not_called()

    def test_execute_values_fallback(self, fake_pool):
        repo = PriceHistoryRepository(fake_pool, StaticCache({'AAPL': 1, 'MSFT': 2}), use_copy=False, batch_size=250)

        with patch('storage.timescale.repositories.price_history.extras.execute_values') as execute_values:
            repo.bulk_upsert([bar('AAPL'), bar('MSFT')])

        fake_pool.cursor.copy_expert.assert_not_called()
        _, sql, rows = execute_values.call_args.args
        assert 'staging_price_history' in sql
        assert len(rows) == 2
        assert execute_values.call_args.kwargs['page_size'] == 250

    def test_duplicate_rows_last_wins(self, fake_pool):
        repo = PriceHistoryRepository(fake_pool, StaticCache({'AAPL': 1}))
        repo.bulk_upsert([bar('AAPL', close=1.0), bar('AAPL', close=2.0)])
        _, buffer = fake_pool.cursor.copy_expert.call_args.args
        lines = buffer.getvalue().splitlines()
        assert len(lines) == 1
        assert ',2.0,' in lines[0]

    def test_reingesting_same_file_updates_in_place(self, fake_pool):
        table = {}
        staged = []
        merges = []

        def copy_expert(sql, buffer):
            staged[:] = list(csv.reader(io.StringIO(buffer.getvalue())))

        def execute(query, params=None):
            if query is MERGE_SQL:
                merges.append(query)
                for row in staged:
                    table[(row[0], row[1], row[2])] = row[3:]
                fake_pool.cursor.rowcount = len(staged)

        fake_pool.cursor.copy_expert.side_effect = copy_expert
        fake_pool.cursor.execute.side_effect = execute
        repo = PriceHistoryRepository(fake_pool, StaticCache({'AAPL': 1, 'MSFT': 2}))

        first = repo.bulk_upsert([bar('AAPL'), bar('MSFT')], Granularity.DAY)
        second = repo.bulk_upsert([bar('AAPL'), bar('MSFT')], Granularity.DAY)
        corrected = repo.bulk_upsert([bar('AAPL', close=12.5)], Granularity.DAY)

        assert (first, second, corrected) == (2, 2, 1)
        assert len(merges) == 3
        assert all('ON CONFLICT (instrument_id, ts, granularity) DO UPDATE' in sql for sql in merges)
        assert len(table) == 2
        assert table[('1', '2024-03-11T05:00:00+00:00', 'DAY')][3] == '12.5'

    def test_empty_input_touches_nothing(self, fake_pool):
        cache = StaticCache({})
        assert PriceHistoryRepository(fake_pool, cache).bulk_upsert([]) == 0
        assert cache.calls == 0
        fake_pool.conn.cursor.assert_not_called()

    def test_resolution_failure_is_bulk_load_error(self, fake_pool):
        cache = MagicMock()
        cache.resolve.side_effect = psycopg2.OperationalError('connection refused')
        with pytest.raises(BulkLoadError):
            PriceHistoryRepository(fake_pool, cache).bulk_upsert([bar('AAPL')])


class FakeInstrumentRepository:
    """Symbol table with a deliberately slow lookup to widen race windows."""

    def __init__(self, existing=None):
        self.table = dict(existing or {})
        self.placeholder_calls = []
        self.lookups = 0
        self._next_id = 100

    def find_ids(self, cur, symbols):
        self.lookups += 1
        time.sleep(0.01)
        return {s: self.table[s] for s in symbols if s in self.table}

    def create_placeholders(self, cur, symbols):
        self.placeholder_calls.append(list(symbols))
        created = 0
        for s in symbols:
            if s not in self.table:
                self._next_id += 1
                self.table[s] = self._next_id
                created += 1
        return created


class TestInstrumentIdCache:
    """Double-checked population of the shared id cache."""

    def test_known_and_new_symbols(self, fake_pool):
        repo = FakeInstrumentRepository({'AAPL': 1})
        cache = InstrumentIdCache(fake_pool, repo)

        ids = cache.resolve(['AAPL', 'ZZZZ', 'AAPL'])

        assert ids['AAPL'] == 1
        assert ids['ZZZZ'] == 101
        assert repo.placeholder_calls == [['ZZZZ']]
        assert len(cache) == 2
        fake_pool.conn.commit.assert_called()

    def test_hits_do_not_touch_database(self, fake_pool):
        repo = FakeInstrumentRepository({'AAPL': 1})
        cache = InstrumentIdCache(fake_pool, repo)
        cache.resolve(['AAPL'])
        lookups = repo.lookups

        cache.resolve(['AAPL'])
        assert repo.lookups == lookups

    def test_concurrent_misses_create_once(self, fake_pool):
        repo = FakeInstrumentRepository()
        cache = InstrumentIdCache(fake_pool, repo)
        results = []

        def worker():
            results.append(cache.resolve(['NEW1', 'NEW2']))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(repo.placeholder_calls) == 1
        assert all(r == results[0] for r in results)


JOB_ROW = ('abc123', 'day_aggs_v1', date(2024, 3, 11), date(2024, 3, 15), 5, 5,
           0, 0, 0, 'IN_PROGRESS', False, None, None)


class TestJobRepository:
    """Job and progress persistence."""

    def test_create_job_with_pending_rows(self, fake_pool):
        fake_pool.cursor.fetchone.return_value = JOB_ROW
        dates = [date(2024, 3, 11), date(2024, 3, 12)]

        with patch('storage.timescale.repositories.jobs.extras.execute_values') as execute_values:
            job = JobRepository(fake_pool).create_job('day_aggs_v1', dates[0], dates[-1], 5, dates)

        assert job.id == 'abc123'
        assert job.status is JobStatus.IN_PROGRESS
        rows = execute_values.call_args.args[2]
        assert [r[1:] for r in rows] == [(d, 'PENDING') for d in dates]
        insert_params = fake_pool.cursor.execute.call_args.args[1]
        assert len(insert_params[0]) == 32
        assert insert_params[5] == 2

    def test_mark_failed_truncates_message(self, fake_pool):
        JobRepository(fake_pool).mark_failed('abc123', date(2024, 3, 13), 'x' * 900, 12)
        params = fake_pool.cursor.execute.call_args.args[1]
        assert params[0] == 'FAILED'
        assert len(params[1]) == 500

    def test_transitions_write_status(self, fake_pool):
        repo = JobRepository(fake_pool)
        repo.mark_downloading('abc123', date(2024, 3, 11))
        assert fake_pool.cursor.execute.call_args.args[1][0] == 'DOWNLOADING'
        repo.mark_completed('abc123', date(2024, 3, 11), 100, 42)
        assert fake_pool.cursor.execute.call_args.args[1][:3] == ('COMPLETED', 100, 42)

    def test_finalize(self, fake_pool):
        JobRepository(fake_pool).finalize_job('abc123', JobStatus.FAILED, 4, 1, 400)
        assert fake_pool.cursor.execute.call_args.args[1] == ('FAILED', 4, 1, 400, 'abc123')

    def test_get_progress_aggregates(self, fake_pool):
        fake_pool.cursor.fetchone.return_value = JOB_ROW
        fake_pool.cursor.fetchall.return_value = [
            ('abc123', date(2024, 3, 11), 'COMPLETED', 100, None, 10, None, None),
            ('abc123', date(2024, 3, 12), 'COMPLETED', 100, None, 10, None, None),
            ('abc123', date(2024, 3, 13), 'FAILED', 0, 'File not found (likely market holiday)', 5, None, None),
            ('abc123', date(2024, 3, 14), 'DOWNLOADING', 0, None, None, None, None),
            ('abc123', date(2024, 3, 15), 'PENDING', 0, None, None, None, None),
        ]

        progress = JobRepository(fake_pool).get_progress('abc123')

        assert (progress.completed, progress.failed, progress.pending) == (2, 1, 2)
        assert progress.total_records == 200
        assert progress.failed_dates[0].status is DateStatus.FAILED
        assert progress.failed_dates[0].error_message.startswith('File not found')

    def test_get_progress_unknown_job(self, fake_pool):
        fake_pool.cursor.fetchone.return_value = None
        with pytest.raises(LookupError):
            JobRepository(fake_pool).get_progress('missing')

    def test_resumable_dates(self, fake_pool):
        fake_pool.cursor.fetchall.return_value = [(date(2024, 3, 13),), (date(2024, 3, 15),)]
        assert JobRepository(fake_pool).get_resumable_dates('abc123') == [date(2024, 3, 13), date(2024, 3, 15)]
        assert fake_pool.cursor.execute.call_args.args[1] == ('abc123', 'COMPLETED')


class TestSchemaAndWriter:
    """DDL and facade wiring."""

    def test_schema_creates_all_tables(self, fake_pool):
        fake_pool.cursor.fetchone.return_value = (1,)
        SchemaManager(fake_pool).initialize_schema()
        ddl = ' '.join(str(c.args[0]) for c in fake_pool.cursor.execute.call_args_list)
        for table in ('instruments', 'price_history', 'flatfile_download_jobs', 'date_download_progress'):
            assert f'CREATE TABLE IF NOT EXISTS {table}' in ddl
        assert 'UNIQUE (instrument_id, ts, granularity)' in ddl
        assert 'PRIMARY KEY (job_id, trade_date)' in ddl
        assert 'create_hypertable' not in ddl

    def test_writer_satisfies_protocols(self, fake_pool):
        fake_pool.cursor.fetchone.return_value = (1,)
        writer = TimescaleWriter(pool=fake_pool)
        assert isinstance(writer, PriceBarLoader)
        assert isinstance(writer, JobStore)
        assert isinstance(writer, InstrumentStore)

    def test_pool_sized_to_concurrency(self):
        config = MagicMock(dsn='postgresql://localhost/test', pool_size=10, use_copy=True, batch_size=1000)
        with patch('storage.timescale.writer.PostgresConnectionPool') as pool_cls, \
                patch('storage.timescale.writer.SchemaManager'):
            TimescaleWriter.from_config(config, concurrency=30)
        assert pool_cls.call_args.kwargs['max_conn'] == 32
        assert pool_cls.call_args.kwargs['dsn'] == 'postgresql://localhost/test'


class TestConnectionPool:
    """Checkout semantics of PostgresConnectionPool."""

    @pytest.fixture
    def threaded_pool(self):
        with patch('storage.timescale.pool.psycopg2.pool.ThreadedConnectionPool') as cls:
            yield cls

    def test_dsn_wins_over_fields(self, threaded_pool):
        db = PostgresConnectionPool(dsn='postgresql://u:p@db/trading', host='ignored', max_conn=4)
        args, kwargs = threaded_pool.call_args
        assert args == (1, 4)
        assert kwargs['dsn'] == 'postgresql://u:p@db/trading'
        assert 'host' not in kwargs
        assert db.describe() == 'DATABASE_URL'

    def test_commit_and_rollback(self, threaded_pool):
        conn = threaded_pool.return_value.getconn.return_value
        db = PostgresConnectionPool(host='db')

        with db.get_connection() as c:
            assert c is conn
        conn.commit.assert_called_once()

        with pytest.raises(ValueError):
            with db.get_connection():
                raise ValueError('bad row')
        conn.rollback.assert_called_once()
        assert threaded_pool.return_value.putconn.call_count == 2

    def test_checkout_times_out_when_exhausted(self, threaded_pool):
        db = PostgresConnectionPool(host='db', max_conn=1, acquire_timeout=0.01)
        with db.get_connection():
            with pytest.raises(ConnectivityError, match='No database connection free'):
                with db.get_connection():
                    pass

    def test_unreachable_database(self, threaded_pool):
        threaded_pool.side_effect = psycopg2.OperationalError('could not connect to server\n')
        with pytest.raises(ConnectivityError, match='could not connect to server'):
            PostgresConnectionPool(host='nowhere', password='secret')
