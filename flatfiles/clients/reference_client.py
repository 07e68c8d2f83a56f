"""
Massive.com Reference Data Client
Fetches the ticker universe used to seed the instruments table.
"""
import logging
from typing import List

from common.models.data_models import TickerResult
from .massive_client import MassiveClient

logger = logging.getLogger(__name__)


class ReferenceClient:
    """
    Client for fetching reference data from Massive.com.

    Endpoints:
    - /v3/reference/tickers
    """

    TICKERS_ENDPOINT = "/v3/reference/tickers"

    def __init__(self, client: MassiveClient):
        """
        Initialize reference client.

        Args:
            client: MassiveClient instance
        """
        self.client = client

    def fetch_all_active(self, market: str = 'stocks') -> List[TickerResult]:
        """
        Fetch every active ticker for a market, following the cursor until exhausted.

        Args:
            market: Market filter ('stocks', 'crypto', 'fx', ...)

        Returns:
            List of TickerResult

        Raises:
            ReferenceApiError: On HTTP failure or malformed payload
        """
        params = {
            'active': 'true',
            'market': market,
        }
        results = self.client._paginate(self.TICKERS_ENDPOINT, params)
        tickers = [TickerResult.from_api(r) for r in results]
        logger.info(f"Fetched {len(tickers)} active {market} tickers")
        return tickers

    def fetch_top_by_market_cap(self, kind: str = 'ETF', limit: int = 1000) -> List[TickerResult]:
        """
        Fetch the largest active tickers of one type, ordered by market cap.

        Args:
            kind: Ticker type (ETF, CS, ADRC, ...)
            limit: Number of results to collect

        Returns:
            Up to ``limit`` TickerResult entries

        Raises:
            ReferenceApiError: On HTTP failure or malformed payload
        """
        if limit <= 0:
            return []

        params = {
            'active': 'true',
            'type': kind,
            'sort': 'market_cap',
            'order': 'desc',
        }
        results = self.client._paginate(self.TICKERS_ENDPOINT, params, max_results=limit)
        tickers = [TickerResult.from_api(r) for r in results]
        logger.info(f"Fetched {len(tickers)}/{limit} {kind} tickers by market cap")
        return tickers
