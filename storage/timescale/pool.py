"""
PostgreSQL connection pool shared by the loader, job store and discovery.

Download workers each hold one connection for the length of a date's bulk
load, so checkout blocks until a connection is free instead of failing.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

import psycopg2
from psycopg2 import pool

from flatfiles.errors import ConnectivityError

logger = logging.getLogger(__name__)

APPLICATION_NAME = 'flatfile-backfill'


class PostgresConnectionPool:
    """
    Blocking wrapper around ``psycopg2.pool.ThreadedConnectionPool``.

    ``get_connection`` commits when the block exits cleanly and rolls back
    when it raises. At most ``max_conn`` connections are checked out at once;
    further callers wait up to ``acquire_timeout`` seconds.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        database: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        min_conn: int = 1,
        max_conn: int = 20,
        acquire_timeout: float = 300.0,
    ):
        """
        Open the pool.

        Args:
            dsn: DATABASE_URL style connection string; wins over the discrete fields
            host: Database host (default: localhost)
            port: Database port (default: 5432)
            database: Database name (default: trading)
            user: Database user (default: postgres)
            password: Database password
            min_conn: Connections opened up front
            max_conn: Upper bound on simultaneous checkouts
            acquire_timeout: Seconds to wait for a free connection

        Raises:
            ConnectivityError: If the initial connections cannot be opened
        """
        self.dsn = dsn
        self.host = host or 'localhost'
        self.port = port or 5432
        self.database = database or 'trading'
        self.user = user or 'postgres'
        self.password = password
        self.min_conn = min_conn
        self.max_conn = max_conn
        self.acquire_timeout = acquire_timeout
        self._slots = threading.BoundedSemaphore(max_conn)

        try:
            self.pool = psycopg2.pool.ThreadedConnectionPool(min_conn, max_conn, **self._connect_kwargs())
        except psycopg2.OperationalError as e:
            raise ConnectivityError(f"Cannot connect to PostgreSQL at {self.describe()}: {str(e).strip()}") from e

        logger.info(f"Connection pool ready: {self.describe()} (min={min_conn}, max={max_conn})")

    def _connect_kwargs(self) -> Dict[str, Any]:
        if self.dsn:
            return {'dsn': self.dsn, 'application_name': APPLICATION_NAME}
        return {
            'host': self.host,
            'port': self.port,
            'dbname': self.database,
            'user': self.user,
            'password': self.password,
            'application_name': APPLICATION_NAME,
        }

    def describe(self) -> str:
        """Connection target without credentials"""
        if self.dsn:
            return 'DATABASE_URL'
        return f"{self.user}@{self.host}:{self.port}/{self.database}"

    @contextmanager
    def get_connection(self):
        """
        Check out a connection for one unit of work.

        Yields:
            psycopg2 connection

        Raises:
            ConnectivityError: No connection became free within acquire_timeout
        """
        if not self._slots.acquire(timeout=self.acquire_timeout):
            raise ConnectivityError(f"No database connection free after {self.acquire_timeout:.0f}s")

        try:
            conn = self.pool.getconn()
        except Exception:
            self._slots.release()
            raise

        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.debug(f"Rolled back: {e}")
            raise
        finally:
            self.pool.putconn(conn)
            self._slots.release()

    def close(self):
        if getattr(self, 'pool', None) is not None and not self.pool.closed:
            self.pool.closeall()
            logger.info("Connection pool closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
