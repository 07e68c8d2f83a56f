"""
Instrument repository.

Handles creating and updating rows of the instruments table.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Sequence

from psycopg2 import extras

from common.models.data_models import Instrument

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    """Counts reported by InstrumentRepository.upsert"""
    created: int = 0
    updated: int = 0
    failed_updates: int = 0


class InstrumentRepository:
    """
    Repository for instrument rows.

    Responsibilities:
    - Batched insert-or-ignore of discovered instruments
    - Best-effort metadata refresh of existing rows
    - Symbol -> id lookups and placeholder creation for the bulk loader
    """

    def __init__(self, pool):
        """
        Initialize instrument repository.

        Args:
            pool: PostgresConnectionPool instance
        """
        self.pool = pool

    def upsert(self, instruments: Sequence[Instrument], batch_size: int = 100) -> UpsertResult:
        """
        Insert new instruments and refresh metadata of existing ones.

        Each batch is inserted with ON CONFLICT DO NOTHING. The metadata update
        of every instrument then runs inside its own SAVEPOINT so a single bad
        row is logged and skipped without losing the rest of the batch.

        Args:
            instruments: Instruments to store (unique by symbol)
            batch_size: Rows per insert batch

        Returns:
            UpsertResult with created/updated/failed counts
        """
        result = UpsertResult()
        total = len(instruments)

        for start in range(0, total, batch_size):
            batch = instruments[start:start + batch_size]

            with self.pool.get_connection() as conn:
                cur = conn.cursor()

                inserted = extras.execute_values(cur, """
                    INSERT INTO instruments (symbol, name, sector, market_cap, instrument_type,
                                             primary_exchange, current_price)
                    VALUES %s
                    ON CONFLICT (symbol) DO NOTHING
                    RETURNING symbol
                """, [
                    (i.symbol, i.name, i.sector, i.market_cap, i.instrument_type,
                     i.primary_exchange, i.current_price)
                    for i in batch
                ], page_size=batch_size, fetch=True)
                created = {row[0] for row in inserted}
                result.created += len(created)

                for instrument in batch:
                    if instrument.symbol in created:
                        continue
                    cur.execute("SAVEPOINT instrument_update")
                    try:
                        cur.execute("""
                            UPDATE instruments SET
                                name = %s,
                                sector = COALESCE(%s, sector),
                                market_cap = COALESCE(%s, market_cap),
                                instrument_type = COALESCE(%s, instrument_type),
                                primary_exchange = COALESCE(%s, primary_exchange),
                                updated_at = NOW()
                            WHERE symbol = %s
                        """, (instrument.name, instrument.sector, instrument.market_cap,
                              instrument.instrument_type, instrument.primary_exchange,
                              instrument.symbol))
                        cur.execute("RELEASE SAVEPOINT instrument_update")
                        result.updated += 1
                    except Exception as e:
                        cur.execute("ROLLBACK TO SAVEPOINT instrument_update")
                        result.failed_updates += 1
                        logger.warning(f"Metadata update failed for {instrument.symbol}: {e}")

                conn.commit()

            done = min(start + batch_size, total)
            logger.info(f"  Progress: {done}/{total} ({done / total * 100:.1f}%)")

        logger.info(
            f"✓ Instruments stored: {result.created} created, {result.updated} updated, "
            f"{result.failed_updates} update failures"
        )
        return result

    def find_ids(self, cur, symbols: Iterable[str]) -> Dict[str, int]:
        """
        Look up instrument ids by symbol.

        Args:
            cur: Open cursor (the caller owns the transaction)
            symbols: Symbols to resolve

        Returns:
            Mapping of the symbols that exist to their ids
        """
        symbols = list(symbols)
        if not symbols:
            return {}
        cur.execute("SELECT symbol, id FROM instruments WHERE symbol = ANY(%s)", (symbols,))
        return {symbol: instrument_id for symbol, instrument_id in cur.fetchall()}

    def create_placeholders(self, cur, symbols: Iterable[str]) -> int:
        """
        Insert placeholder rows (name = symbol, price 0) for unknown symbols.

        Args:
            cur: Open cursor (the caller owns the transaction)
            symbols: Symbols to create

        Returns:
            Number of rows actually inserted
        """
        rows = [(s, s, 0) for s in symbols]
        if not rows:
            return 0
        inserted = extras.execute_values(cur, """
            INSERT INTO instruments (symbol, name, current_price)
            VALUES %s
            ON CONFLICT (symbol) DO NOTHING
            RETURNING id
        """, rows, page_size=1000, fetch=True)
        return len(inserted)

    def count(self) -> int:
        """Total number of instruments"""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM instruments")
            return cur.fetchone()[0]
