"""TimescaleDB Writer - Facade Pattern delegating to specialized components."""
import logging
from datetime import date
from typing import List, Optional, Sequence

from common.config.settings import DatabaseConfig
from common.models.data_models import (
    DateProgress,
    Granularity,
    IngestionJob,
    Instrument,
    JobProgress,
    JobStatus,
    PriceBar,
)
from .instrument_cache import InstrumentIdCache
from .pool import PostgresConnectionPool
from .schema import SchemaManager
from .repositories.instruments import InstrumentRepository, UpsertResult
from .repositories.jobs import JobRepository
from .repositories.price_history import PriceHistoryRepository

logger = logging.getLogger(__name__)


class TimescaleWriter:
    """
    Storage facade for the backfill pipeline - delegates to:
    - PostgresConnectionPool: Connection management
    - SchemaManager: DDL operations
    - Repository classes: Data access

    Features:
    - Connection pooling sized to the download concurrency
    - COPY-based bulk loads with idempotent merges
    - Transaction safety with rollback on error
    - Automatic schema creation

    Implements the PriceBarLoader, JobStore and InstrumentStore protocols.
    """

    def __init__(self, dsn: Optional[str] = None, host: Optional[str] = None,
                 port: Optional[int] = None, database: Optional[str] = None,
                 user: Optional[str] = None, password: Optional[str] = None,
                 min_conn: int = 1, max_conn: int = 20, use_copy: bool = True,
                 batch_size: int = 1000, use_timescale: bool = False,
                 pool: Optional[PostgresConnectionPool] = None):
        """
        Initialize writer.

        Args:
            dsn: Connection URL (takes precedence over host/port/...)
            host: Database host (default: localhost)
            port: Database port (default: 5432)
            database: Database name (default: trading)
            user: Database user (default: postgres)
            password: Database password
            min_conn: Minimum connections in pool
            max_conn: Maximum connections in pool
            use_copy: Stage bulk loads with COPY
            batch_size: Page size when COPY is disabled
            use_timescale: Create price_history as a hypertable
            pool: Existing pool (skips pool creation)
        """
        try:
            self.pool = pool or PostgresConnectionPool(
                dsn=dsn,
                host=host,
                port=port,
                database=database,
                user=user,
                password=password,
                min_conn=min_conn,
                max_conn=max_conn
            )

            # Initialize components
            self.schema_manager = SchemaManager(self.pool, use_timescale=use_timescale)
            self.instrument_repo = InstrumentRepository(self.pool)
            self.instrument_cache = InstrumentIdCache(self.pool, self.instrument_repo)
            self.price_repo = PriceHistoryRepository(
                self.pool, self.instrument_cache, use_copy=use_copy, batch_size=batch_size
            )
            self.job_repo = JobRepository(self.pool)

            # Initialize schema
            self.schema_manager.initialize_schema()

        except Exception as e:
            logger.error(f"Failed to initialize TimescaleWriter: {e}")
            raise

    @classmethod
    def from_config(cls, config: DatabaseConfig, concurrency: int = 1,
                    use_copy: Optional[bool] = None) -> 'TimescaleWriter':
        """
        Build a writer whose pool never starves the download threads.

        Args:
            config: Database settings
            concurrency: Dates processed in parallel
            use_copy: Override of config.use_copy
        """
        return cls(
            dsn=config.dsn,
            host=config.host,
            port=config.port,
            database=config.database,
            user=config.user,
            password=config.password,
            max_conn=max(config.pool_size, concurrency + 2),
            use_copy=config.use_copy if use_copy is None else use_copy,
            batch_size=config.batch_size,
        )

    def get_connection(self):
        """Context manager for getting a connection from the pool."""
        return self.pool.get_connection()

    # Bulk loader

    def bulk_upsert(self, records: Sequence[PriceBar], granularity: Granularity = Granularity.DAY) -> int:
        """Insert/update price bars for one file."""
        return self.price_repo.bulk_upsert(records, granularity)

    # Instruments

    def upsert_instruments(self, instruments: Sequence[Instrument], batch_size: int = 100) -> UpsertResult:
        """Insert new instruments and refresh metadata of existing ones."""
        return self.instrument_repo.upsert(instruments, batch_size)

    def count_instruments(self) -> int:
        return self.instrument_repo.count()

    # Jobs

    def create_job(self, data_type: str, start_date: date, end_date: date, concurrency: int,
                   dates: Sequence[date], dry_run: bool = False) -> IngestionJob:
        return self.job_repo.create_job(data_type, start_date, end_date, concurrency, dates, dry_run)

    def mark_downloading(self, job_id: str, trade_date: date):
        self.job_repo.mark_downloading(job_id, trade_date)

    def mark_completed(self, job_id: str, trade_date: date, records: int, duration_ms: int):
        self.job_repo.mark_completed(job_id, trade_date, records, duration_ms)

    def mark_failed(self, job_id: str, trade_date: date, error_message: str, duration_ms: int):
        self.job_repo.mark_failed(job_id, trade_date, error_message, duration_ms)

    def finalize_job(self, job_id: str, status: JobStatus, completed: int, failed: int, total_records: int):
        self.job_repo.finalize_job(job_id, status, completed, failed, total_records)

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        return self.job_repo.get_job(job_id)

    def get_date_progress(self, job_id: str) -> List[DateProgress]:
        return self.job_repo.get_date_progress(job_id)

    def get_progress(self, job_id: str) -> JobProgress:
        return self.job_repo.get_progress(job_id)

    def get_resumable_dates(self, job_id: str) -> List[date]:
        return self.job_repo.get_resumable_dates(job_id)

    def database_size(self) -> str:
        """Human-readable size of the current database (pg_size_pretty)."""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT pg_size_pretty(pg_database_size(current_database()))")
            row = cur.fetchone()
        return row[0] if row else 'Unknown'

    def close(self):
        """Close all connections in the pool."""
        self.pool.close()
