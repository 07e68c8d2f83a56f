"""Storage interfaces using Protocol for duck typing."""
from datetime import date
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from common.models.data_models import (
    Granularity,
    IngestionJob,
    Instrument,
    JobStatus,
    PriceBar,
)


@runtime_checkable
class PriceBarLoader(Protocol):
    """
    Protocol for the bulk loader used by the orchestrator.

    Any backend can implement this; tests use an in-memory fake.
    """

    def bulk_upsert(self, records: Sequence[PriceBar], granularity: Granularity = Granularity.DAY) -> int:
        """
        Insert or update one file's bars atomically.

        Args:
            records: Parsed bars
            granularity: DAY or MINUTE

        Returns:
            Rows inserted or updated

        Raises:
            BulkLoadError: Nothing from this call was persisted
        """
        ...


@runtime_checkable
class JobStore(Protocol):
    """Protocol for job and per-date progress persistence."""

    def create_job(self, data_type: str, start_date: date, end_date: date, concurrency: int,
                   dates: Sequence[date], dry_run: bool = False) -> IngestionJob:
        """Create a job with one PENDING progress row per date."""
        ...

    def mark_downloading(self, job_id: str, trade_date: date) -> None:
        ...

    def mark_completed(self, job_id: str, trade_date: date, records: int, duration_ms: int) -> None:
        ...

    def mark_failed(self, job_id: str, trade_date: date, error_message: str, duration_ms: int) -> None:
        ...

    def finalize_job(self, job_id: str, status: JobStatus, completed: int, failed: int,
                     total_records: int) -> None:
        ...

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        ...

    def get_resumable_dates(self, job_id: str) -> List[date]:
        ...


@runtime_checkable
class InstrumentStore(Protocol):
    """Protocol for instrument discovery persistence."""

    def upsert_instruments(self, instruments: Sequence[Instrument], batch_size: int = 100):
        """
        Insert new instruments and refresh metadata of existing ones.

        Returns:
            UpsertResult (created, updated, failed_updates)
        """
        ...

    def count_instruments(self) -> int:
        ...
