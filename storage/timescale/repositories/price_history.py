"""
Price history repository.

Bulk-loads parsed flat-file bars with PostgreSQL COPY into a staging table and
merges them into price_history in a single statement.
"""
import csv
import io
import logging
from typing import Dict, List, Sequence, Tuple

from psycopg2 import extras

from common.models.data_models import Granularity, PriceBar
from flatfiles.errors import BulkLoadError
from ..instrument_cache import InstrumentIdCache

logger = logging.getLogger(__name__)

STAGING_COLUMNS = (
    'instrument_id', 'ts', 'granularity', 'open', 'high', 'low', 'close',
    'volume', 'vwap', 'transactions',
)

CREATE_STAGING_SQL = """
    CREATE TEMP TABLE staging_price_history (
        instrument_id BIGINT NOT NULL,
        ts TIMESTAMPTZ NOT NULL,
        granularity TEXT NOT NULL,
        open DOUBLE PRECISION,
        high DOUBLE PRECISION,
        low DOUBLE PRECISION,
        close DOUBLE PRECISION,
        volume BIGINT,
        vwap DOUBLE PRECISION,
        transactions INTEGER
    ) ON COMMIT DROP
"""

COPY_SQL = (
    "COPY staging_price_history ({}) FROM STDIN WITH (FORMAT csv, NULL '')"
    .format(', '.join(STAGING_COLUMNS))
)

INSERT_STAGING_SQL = (
    "INSERT INTO staging_price_history ({}) VALUES %s"
    .format(', '.join(STAGING_COLUMNS))
)

MERGE_SQL = """
    INSERT INTO price_history
        (instrument_id, ts, granularity, open, high, low, close, volume, vwap, transactions)
    SELECT instrument_id, ts, granularity, open, high, low, close, volume, vwap, transactions
    FROM staging_price_history
    ON CONFLICT (instrument_id, ts, granularity) DO UPDATE SET
        open = EXCLUDED.open,
        high = EXCLUDED.high,
        low = EXCLUDED.low,
        close = EXCLUDED.close,
        volume = EXCLUDED.volume,
        vwap = EXCLUDED.vwap,
        transactions = EXCLUDED.transactions
"""

# Dates are taken in UTC, the timezone of window_start
REFRESH_INSTRUMENTS_SQL = """
    UPDATE instruments i SET
        first_trade_date = LEAST(i.first_trade_date, s.first_date),
        last_trade_date = GREATEST(i.last_trade_date, s.last_date),
        current_price = CASE
            WHEN i.last_trade_date IS NULL OR s.last_date >= i.last_trade_date THEN s.last_close
            ELSE i.current_price
        END,
        updated_at = NOW()
    FROM (
        SELECT instrument_id,
               MIN(ts AT TIME ZONE 'UTC')::date AS first_date,
               MAX(ts AT TIME ZONE 'UTC')::date AS last_date,
               (ARRAY_AGG(close ORDER BY ts DESC))[1] AS last_close
        FROM staging_price_history
        GROUP BY instrument_id
    ) s
    WHERE i.id = s.instrument_id
"""

StagingRow = Tuple


class PriceHistoryRepository:
    """
    Repository for price_history writes.

    Responsibilities:
    - Resolve tickers to instrument ids (shared cache, placeholders for new symbols)
    - Stage rows with COPY, or multi-row INSERT when COPY is disabled
    - Merge staged rows with ON CONFLICT DO UPDATE (re-runs update in place)
    - Refresh first/last trade date and current price of touched instruments
    """

    def __init__(self, pool, instrument_cache: InstrumentIdCache,
                 use_copy: bool = True, batch_size: int = 1000):
        """
        Initialize price history repository.

        Args:
            pool: PostgresConnectionPool instance
            instrument_cache: Shared symbol -> id cache
            use_copy: Stage with COPY FROM STDIN (False: execute_values pages)
            batch_size: Page size of the execute_values fallback
        """
        self.pool = pool
        self.instrument_cache = instrument_cache
        self.use_copy = use_copy
        self.batch_size = batch_size

    def bulk_upsert(self, records: Sequence[PriceBar], granularity: Granularity = Granularity.DAY) -> int:
        """
        Insert or update a file's worth of bars in one transaction.

        Args:
            records: Parsed bars
            granularity: DAY or MINUTE

        Returns:
            Rows inserted or updated

        Raises:
            BulkLoadError: On any failure; nothing from this call is persisted
        """
        if not records:
            return 0

        granularity = Granularity(granularity)
        logger.info(f"[DB] Bulk inserting {len(records)} records ({granularity.value})...")

        try:
            ids = self.instrument_cache.resolve(r.ticker for r in records)
            rows = self._staging_rows(records, ids, granularity)

            with self.pool.get_connection() as conn:
                cur = conn.cursor()
                cur.execute(CREATE_STAGING_SQL)

                if self.use_copy:
                    self._copy_rows(cur, rows)
                else:
                    extras.execute_values(cur, INSERT_STAGING_SQL, rows, page_size=self.batch_size)

                cur.execute(MERGE_SQL)
                affected = cur.rowcount

                cur.execute(REFRESH_INSTRUMENTS_SQL)
                conn.commit()
        except Exception as e:
            raise BulkLoadError(f"Bulk load of {len(records)} records failed: {e}") from e

        logger.info(f"[DB] Inserted/updated {affected} price records")
        return affected

    @staticmethod
    def _staging_rows(records: Sequence[PriceBar], ids: Dict[str, int],
                      granularity: Granularity) -> List[StagingRow]:
        # One row per (instrument, ts): ON CONFLICT cannot touch a row twice in one statement
        unique: Dict[Tuple[int, object], StagingRow] = {}
        for r in records:
            instrument_id = ids[r.ticker]
            unique[(instrument_id, r.timestamp)] = (
                instrument_id, r.timestamp, granularity.value,
                r.open, r.high, r.low, r.close, r.volume, r.vwap, r.transactions,
            )

        duplicates = len(records) - len(unique)
        if duplicates:
            logger.warning(f"[DB] Dropped {duplicates} duplicate rows (last occurrence kept)")
        return list(unique.values())

    @staticmethod
    def _copy_rows(cur, rows: List[StagingRow]):
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        for row in rows:
            writer.writerow(row[:1] + (row[1].isoformat(),) + row[2:])
        buffer.seek(0)
        cur.copy_expert(COPY_SQL, buffer)
