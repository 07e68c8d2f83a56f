"""
Schema management for the backfill tables.

Handles database schema creation, migrations, and DDL operations.
"""
import logging

from psycopg2 import sql

logger = logging.getLogger(__name__)


class SchemaManager:
    """
    Manages schema creation and migrations.

    Responsibilities:
    - Create instruments and price_history tables
    - Create job and per-date progress tables
    - Handle schema migrations (column additions)
    - Create indexes for query optimization
    - Optionally convert price_history into a TimescaleDB hypertable
    """

    def __init__(self, pool, use_timescale: bool = False):
        """
        Initialize schema manager.

        Args:
            pool: PostgresConnectionPool instance
            use_timescale: Convert price_history to a hypertable when the
                timescaledb extension is available
        """
        self.pool = pool
        self.use_timescale = use_timescale

    def initialize_schema(self):
        """Initialize complete database schema."""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()

            self._create_instruments_table(cur)
            self._create_price_history_table(cur)
            self._create_jobs_table(cur)
            self._create_progress_table(cur)

            if self.use_timescale:
                self._create_hypertable(cur)

            conn.commit()
            logger.info("Database schema initialized")

    def _create_instruments_table(self, cur):
        """Create instruments table."""
        cur.execute("""
            CREATE TABLE IF NOT EXISTS instruments (
                id BIGSERIAL PRIMARY KEY,
                symbol TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                sector TEXT,
                market_cap DOUBLE PRECISION,
                instrument_type TEXT,
                primary_exchange TEXT,
                current_price DOUBLE PRECISION NOT NULL DEFAULT 0,
                first_trade_date DATE,
                last_trade_date DATE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)

        # Older databases predate these columns
        for col, col_type in (('instrument_type', 'TEXT'),
                              ('primary_exchange', 'TEXT'),
                              ('first_trade_date', 'DATE'),
                              ('last_trade_date', 'DATE')):
            self._ensure_column(cur, 'instruments', col, col_type)

        logger.debug("Created instruments table")

    def _create_price_history_table(self, cur):
        """Create price history table."""
        cur.execute("""
            CREATE TABLE IF NOT EXISTS price_history (
                id BIGSERIAL,
                instrument_id BIGINT NOT NULL REFERENCES instruments (id) ON DELETE CASCADE,
                ts TIMESTAMPTZ NOT NULL,
                granularity TEXT NOT NULL CHECK (granularity IN ('DAY', 'MINUTE')),
                open DOUBLE PRECISION,
                high DOUBLE PRECISION,
                low DOUBLE PRECISION,
                close DOUBLE PRECISION,
                volume BIGINT,
                vwap DOUBLE PRECISION,
                transactions INTEGER,
                CONSTRAINT price_history_instrument_ts_granularity_key
                    UNIQUE (instrument_id, ts, granularity)
            );
        """)

        self._ensure_column(cur, 'price_history', 'transactions', 'INTEGER')

        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_price_history_ts
            ON price_history (ts DESC);
        """)
        logger.debug("Created price_history table")

    def _create_jobs_table(self, cur):
        """Create download jobs table."""
        cur.execute("""
            CREATE TABLE IF NOT EXISTS flatfile_download_jobs (
                id TEXT PRIMARY KEY,
                data_type TEXT NOT NULL,
                start_date DATE NOT NULL,
                end_date DATE NOT NULL,
                concurrency INTEGER NOT NULL,
                total_dates INTEGER NOT NULL,
                completed_dates INTEGER NOT NULL DEFAULT 0,
                failed_dates INTEGER NOT NULL DEFAULT 0,
                total_records BIGINT NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'IN_PROGRESS',
                dry_run BOOLEAN NOT NULL DEFAULT FALSE,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)

        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_flatfile_download_jobs_created
            ON flatfile_download_jobs (created_at DESC);
        """)
        logger.debug("Created flatfile_download_jobs table")

    def _create_progress_table(self, cur):
        """Create per-date progress table."""
        cur.execute("""
            CREATE TABLE IF NOT EXISTS date_download_progress (
                job_id TEXT NOT NULL REFERENCES flatfile_download_jobs (id) ON DELETE CASCADE,
                trade_date DATE NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING',
                records_processed INTEGER NOT NULL DEFAULT 0,
                error_message VARCHAR(500),
                duration_ms INTEGER,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                PRIMARY KEY (job_id, trade_date)
            );
        """)

        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_date_download_progress_status
            ON date_download_progress (job_id, status);
        """)
        logger.debug("Created date_download_progress table")

    def _create_hypertable(self, cur):
        """Convert price_history to a hypertable (TimescaleDB only)."""
        cur.execute("CREATE EXTENSION IF NOT EXISTS timescaledb CASCADE;")
        cur.execute("""
            SELECT create_hypertable('price_history', 'ts',
                                     chunk_time_interval => INTERVAL '30 days',
                                     if_not_exists => TRUE,
                                     migrate_data => TRUE);
        """)
        logger.debug("price_history converted to hypertable")

    def _ensure_column(self, cur, table_name: str, column: str, column_type: str):
        """Add a column if an older schema lacks it."""
        cur.execute(
            """
            SELECT 1
            FROM information_schema.columns
            WHERE table_schema = current_schema()
              AND table_name = %s
              AND column_name = %s
            """,
            (table_name, column),
        )
        if not cur.fetchone():
            logger.info(f"Adding missing {column} column to {table_name}")
            cur.execute(
                sql.SQL("ALTER TABLE {} ADD COLUMN {} {}").format(
                    sql.Identifier(table_name),
                    sql.Identifier(column),
                    sql.SQL(column_type),
                )
            )
