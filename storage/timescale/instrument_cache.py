"""
Shared symbol -> instrument id cache used by the bulk loader.
"""
import logging
import threading
from typing import Dict, Iterable

from .repositories.instruments import InstrumentRepository

logger = logging.getLogger(__name__)


class InstrumentIdCache:
    """
    Read-mostly cache of instrument ids, shared by all loader threads.

    Hits are served without taking the lock. Misses are resolved under the
    lock with a second check, so concurrent loaders that miss on the same
    symbol create its placeholder row only once.
    """

    def __init__(self, pool, repository: InstrumentRepository):
        """
        Args:
            pool: PostgresConnectionPool instance
            repository: Repository used for lookups and placeholder inserts
        """
        self.pool = pool
        self.repository = repository
        self._ids: Dict[str, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._ids)

    def resolve(self, symbols: Iterable[str]) -> Dict[str, int]:
        """
        Map symbols to instrument ids, creating placeholder instruments for
        symbols the database has never seen.

        Resolution commits in its own transaction, so a later rollback of a
        price load never leaves ids in the cache that do not exist.

        Args:
            symbols: Symbols appearing in one file

        Returns:
            Mapping for every requested symbol
        """
        wanted = set(symbols)
        missing = [s for s in wanted if s not in self._ids]

        if missing:
            with self._lock:
                # Another thread may have filled these while we waited
                missing = [s for s in missing if s not in self._ids]
                if missing:
                    self._load(missing)

        return {s: self._ids[s] for s in wanted}

    def _load(self, symbols):
        with self.pool.get_connection() as conn:
            cur = conn.cursor()

            found = self.repository.find_ids(cur, symbols)
            unknown = [s for s in symbols if s not in found]

            if unknown:
                created = self.repository.create_placeholders(cur, unknown)
                found.update(self.repository.find_ids(cur, unknown))
                logger.info(f"[DB] Created {created} new instrument entries")

            conn.commit()

        still_missing = [s for s in symbols if s not in found]
        if still_missing:
            raise LookupError(f"Could not resolve instrument ids for {len(still_missing)} symbols: {still_missing[:5]}")

        self._ids.update(found)
        logger.debug(f"Instrument cache: +{len(found)} ids ({len(self._ids)} total)")
