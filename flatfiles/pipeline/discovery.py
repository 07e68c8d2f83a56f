"""
Instrument Discovery
Seeds the instruments table with every active stock plus the largest ETFs.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence

from common.models.data_models import TickerResult
from flatfiles.clients.reference_client import ReferenceClient
from storage.interfaces import InstrumentStore

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    """Outcome of one discovery run"""
    stocks: int
    etfs: int
    unique: int
    created: int
    updated: int
    failed_updates: int
    total_in_db: int


def dedupe_tickers(tickers: Sequence[TickerResult]) -> List[TickerResult]:
    """
    Drop duplicate tickers; a later entry replaces an earlier one.

    First-seen order is preserved.
    """
    unique: Dict[str, TickerResult] = {}
    for ticker in tickers:
        unique[ticker.ticker] = ticker
    return list(unique.values())


class InstrumentDiscovery:
    """
    Fetch reference tickers and store them as instruments.

    Steps:
    1. All active tickers of a market
    2. Top ETFs by market cap
    3. Dedupe and upsert
    """

    def __init__(self, reference_client: ReferenceClient, store: InstrumentStore, batch_size: int = 100):
        """
        Args:
            reference_client: Reference data client
            store: Instrument persistence (TimescaleWriter)
            batch_size: Rows per insert batch
        """
        self.reference_client = reference_client
        self.store = store
        self.batch_size = batch_size

    def run(self, etf_limit: int = 1000, market: str = 'stocks') -> DiscoveryResult:
        """
        Run discovery.

        Args:
            etf_limit: Number of ETFs to fetch by market cap
            market: Market of the full ticker listing

        Returns:
            DiscoveryResult

        Raises:
            ReferenceApiError: If either fetch fails (nothing is stored)
        """
        logger.info(f"[1/3] Fetching all active {market} tickers...")
        stocks = self.reference_client.fetch_all_active(market=market)
        logger.info(f"✓ Found {len(stocks)} {market} tickers")

        logger.info(f"[2/3] Fetching top {etf_limit} ETFs by market cap...")
        etfs = self.reference_client.fetch_top_by_market_cap(kind='ETF', limit=etf_limit)
        logger.info(f"✓ Found {len(etfs)} ETFs")

        unique = dedupe_tickers(list(stocks) + list(etfs))
        logger.info(f"[3/3] Storing {len(unique)} securities in database...")

        upserted = self.store.upsert_instruments([t.to_instrument() for t in unique], self.batch_size)
        total = self.store.count_instruments()

        result = DiscoveryResult(
            stocks=len(stocks),
            etfs=len(etfs),
            unique=len(unique),
            created=upserted.created,
            updated=upserted.updated,
            failed_updates=upserted.failed_updates,
            total_in_db=total,
        )
        logger.info(
            f"✓ Discovery complete: {result.created} new, {result.updated} updated, "
            f"{result.total_in_db} securities in database"
        )
        return result
