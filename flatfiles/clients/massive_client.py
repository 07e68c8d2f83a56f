"""
Massive.com REST API Client
Base client with rate limiting, retry logic, and connection pooling.
"""
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
import time
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse
import threading

from flatfiles.errors import ReferenceApiError

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Thread-safe token bucket shared by every request of one client.

    Tokens refill continuously at ``requests_per_second`` up to one second's
    burst. Waiting happens outside the lock so other threads can refill and
    take tokens meanwhile.
    """

    def __init__(self, requests_per_second: float = 5,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize rate limiter.

        Args:
            requests_per_second: Sustained request rate (also the burst size)
            clock: Monotonic clock (tests inject a fake)
            sleep: Sleep function (tests inject a recorder)
        """
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.rate = float(requests_per_second)
        self.capacity = float(requests_per_second)
        self.tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self._last = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float):
        self.tokens = min(self.capacity, self.tokens + (now - self._last) * self.rate)
        self._last = now

    def acquire(self) -> float:
        """
        Take one token, waiting for a refill if the bucket is empty.

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        while True:
            with self._lock:
                self._refill(self._clock())
                if self.tokens >= 1:
                    self.tokens -= 1
                    return waited
                delay = (1 - self.tokens) / self.rate
            self._sleep(delay)
            waited += delay


def extract_cursor(next_url: Optional[str]) -> Optional[str]:
    """
    Pull the opaque ``cursor`` query parameter out of a ``next_url``.

    Returns:
        Cursor string, or None when there is no next page
    """
    if not next_url:
        return None
    values = parse_qs(urlparse(next_url).query).get('cursor')
    if not values or not values[0]:
        return None
    return values[0]


class MassiveClient:
    """
    Massive.com REST API base client.

    Features:
    - HTTP connection pooling
    - Automatic retry with exponential backoff on 429/5xx
    - Rate limiting
    - Bearer-token authentication
    - Cursor pagination over ``next_url``
    """

    DEFAULT_BASE_URL = "https://api.massive.com"

    def __init__(self, api_key: str, base_url: Optional[str] = None, rate_limit: int = 5,
                 max_retries: int = 3, timeout: int = 30, max_connections: int = 10,
                 page_pause_seconds: float = 0.1, session: Optional[requests.Session] = None):
        """
        Initialize Massive client.

        Args:
            api_key: Massive API key (sent as a bearer token)
            base_url: API base URL
            rate_limit: Requests per second
            max_retries: Maximum retry attempts for 429/5xx responses
            timeout: Request timeout in seconds
            max_connections: Maximum HTTP connections in pool
            page_pause_seconds: Pause between pagination requests
            session: Pre-built session (tests inject one)
        """
        if not api_key:
            raise ReferenceApiError("MASSIVE_API_KEY is not set")

        self.api_key = api_key
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip('/')
        self.rate_limiter = RateLimiter(rate_limit)
        self.timeout = timeout
        self.page_pause_seconds = page_pause_seconds

        if session is None:
            session = requests.Session()

            retry_strategy = Retry(
                total=max_retries,
                backoff_factor=2,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET"]
            )

            adapter = HTTPAdapter(
                pool_connections=max_connections,
                pool_maxsize=max_connections,
                max_retries=retry_strategy,
                pool_block=True
            )

            session.mount("https://", adapter)
            session.mount("http://", adapter)

        self.session = session
        self.session.headers.update({'Authorization': f'Bearer {api_key}'})

        logger.info(f"Massive client initialized: {self.base_url}, {rate_limit} req/s")

    def _make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make rate-limited HTTP request to the Massive API.

        Args:
            endpoint: API endpoint path
            params: Query parameters

        Returns:
            JSON response dictionary

        Raises:
            ReferenceApiError: If the request fails after retries or returns non-JSON
        """
        self.rate_limiter.acquire()

        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logger.error(f"HTTP error for {endpoint}: {e}")
            raise ReferenceApiError(f"API error for {endpoint}: HTTP {status}", status_code=status) from e
        except requests.RequestException as e:
            logger.error(f"Request error for {endpoint}: {e}")
            raise ReferenceApiError(f"Request to {endpoint} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise ReferenceApiError(f"Invalid JSON from {endpoint}") from e

        if not isinstance(payload, dict):
            raise ReferenceApiError(f"Unexpected response shape from {endpoint}")
        return payload

    def _paginate(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                  max_results: Optional[int] = None, page_size: int = 1000) -> List[Dict[str, Any]]:
        """
        Paginate through API results using cursor.

        Args:
            endpoint: API endpoint path
            params: Query parameters
            max_results: Maximum number of results to fetch (None for all)
            page_size: Upper bound of results requested per page

        Returns:
            List of result dictionaries
        """
        params = dict(params or {})

        all_results: List[Dict[str, Any]] = []
        next_cursor = None
        page = 1

        while True:
            request_params = dict(params)
            limit = page_size
            if max_results is not None:
                limit = min(page_size, max_results - len(all_results))
            request_params['limit'] = limit
            if next_cursor:
                request_params['cursor'] = next_cursor

            response = self._make_request(endpoint, request_params)

            results = response.get('results') or []
            if not isinstance(results, list):
                raise ReferenceApiError(f"'results' from {endpoint} is not a list")

            all_results.extend(results)
            logger.debug(f"Page {page}: {len(results)} results | Total: {len(all_results)}")

            if max_results is not None and len(all_results) >= max_results:
                all_results = all_results[:max_results]
                break

            next_cursor = extract_cursor(response.get('next_url'))
            if not next_cursor:
                break

            page += 1
            if self.page_pause_seconds:
                time.sleep(self.page_pause_seconds)

        return all_results

    def close(self):
        """Close the HTTP session"""
        self.session.close()
        logger.info("Closed Massive client session")
