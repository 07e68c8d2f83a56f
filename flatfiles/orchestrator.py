"""
Bulk Download Orchestrator
Coordinates a flat-file download job: one unit of work per trading date.

Flow per job:
1. Pre-flight: settings, candidate dates, storage connectivity
2. Job + PENDING progress rows created in one transaction
3. Dates processed in batches of ``concurrency`` on a thread pool; each batch
   settles completely before the next one starts
4. Job finalized with totals and COMPLETED/FAILED
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import date
from typing import Callable, List, Optional, Sequence

from common.config.settings import validate_download_settings
from common.models.data_models import (
    DataType,
    DateOutcome,
    DateStatus,
    JobStatus,
    JobSummary,
    PriceBar,
)
from flatfiles.calendar import flatfile_key, format_date, generate_trading_dates
from flatfiles.clients.flatfile_client import FlatFileClient
from flatfiles.errors import (
    ConfigurationError,
    ConnectivityError,
    EmptyPayloadError,
    ObjectNotFoundError,
    describe_failure,
)
from flatfiles.pipeline.record_parser import RecordParser
from flatfiles.utils.progress import ProgressCallback, ProgressTracker
from storage.interfaces import JobStore, PriceBarLoader

logger = logging.getLogger(__name__)


class BulkDownloadOrchestrator:
    """
    Runs download jobs against a flat-file store.

    Collaborators are injected so the same orchestrator runs against S3 and
    PostgreSQL in production and against in-memory fakes in tests.

    Stop handling is cooperative: ``request_stop()`` (or an exceeded
    ``max_runtime_seconds``) is honoured between batches. The batch in flight
    finishes and records its progress; dates never started stay PENDING.
    """

    def __init__(self, storage: FlatFileClient, job_store: JobStore,
                 loader: Optional[PriceBarLoader] = None,
                 parser: Optional[RecordParser] = None,
                 market: str = 'us_stocks_sip',
                 progress_callback: Optional[ProgressCallback] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize orchestrator.

        Args:
            storage: Flat files client (download_with_retry, test_connection)
            job_store: Job/progress persistence
            loader: Bulk loader; may be None for dry runs
            parser: Record parser (default: RecordParser())
            market: Market prefix of object keys
            progress_callback: Called with a ProgressSnapshot after every date
            clock: Monotonic clock (tests inject a fake)
        """
        self.storage = storage
        self.job_store = job_store
        self.loader = loader
        self.parser = parser or RecordParser()
        self.market = market
        self.progress_callback = progress_callback
        self._clock = clock
        self._stop_event = threading.Event()

    def request_stop(self):
        """Ask the running job to stop after the current batch"""
        if not self._stop_event.is_set():
            logger.warning("Stop requested; finishing the current batch")
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def preflight(self, data_type: str, start_date: date, end_date: date, concurrency: int,
                  dry_run: bool = False, dates: Optional[Sequence[date]] = None) -> List[date]:
        """
        Validate a run before anything is written.

        Args:
            data_type: Flat-file dataset
            start_date: First date (inclusive)
            end_date: Last date (inclusive)
            concurrency: Dates processed in parallel
            dry_run: Whether loading is skipped
            dates: Explicit date list (resume); overrides the generated range

        Returns:
            Candidate dates to process

        Raises:
            ConfigurationError: Bad settings or no candidate dates
            ConnectivityError: Storage endpoint/credentials probe failed
        """
        validate_download_settings(data_type, start_date, end_date, concurrency)

        if not dry_run and self.loader is None:
            raise ConfigurationError("A loader is required unless running in dry-run mode")

        if dates is not None:
            candidates = sorted(set(dates))
        else:
            candidates = generate_trading_dates(start_date, end_date)
        if not candidates:
            raise ConfigurationError(
                f"No trading dates between {format_date(start_date)} and {format_date(end_date)}"
            )

        if not self.storage.test_connection():
            raise ConnectivityError("S3 connection failed. Check credentials and endpoint.")

        return candidates

    def run(self, data_type: str, start_date: date, end_date: date, concurrency: int = 15,
            dry_run: bool = False, max_runtime_seconds: Optional[float] = None,
            dates: Optional[Sequence[date]] = None) -> JobSummary:
        """
        Run one download job.

        Args:
            data_type: Flat-file dataset (day_aggs_v1, minute_aggs_v1)
            start_date: First date (inclusive)
            end_date: Last date (inclusive)
            concurrency: Maximum dates in flight
            dry_run: Download and parse but do not load
            max_runtime_seconds: Stop scheduling new batches after this long
            dates: Explicit dates to process (e.g. resumable dates of an older job)

        Returns:
            JobSummary

        Raises:
            ConfigurationError, ConnectivityError: Pre-flight failed; no job was created
        """
        candidates = self.preflight(data_type, start_date, end_date, concurrency, dry_run, dates)
        granularity = DataType(data_type).granularity
        started = self._clock()

        job = self.job_store.create_job(data_type, start_date, end_date, concurrency, candidates, dry_run)
        logger.info(
            f"Job {job.id}: {len(candidates)} dates | {data_type} | concurrency {concurrency}"
            f"{' | DRY RUN' if dry_run else ''}"
        )

        tracker = ProgressTracker(len(candidates), clock=self._clock)
        processed = 0

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix='flatfile') as executor:
            for offset in range(0, len(candidates), concurrency):
                if self._should_stop(started, max_runtime_seconds):
                    break

                batch = candidates[offset:offset + concurrency]
                futures = {
                    executor.submit(self.process_date, job.id, d, data_type, granularity, dry_run): d
                    for d in batch
                }
                wait(futures)

                for future, trade_date in futures.items():
                    try:
                        outcome = future.result()
                    except Exception as e:
                        # Progress store failure; the date is counted as failed
                        logger.error(f"✗ {format_date(trade_date)} | progress update failed: {e}")
                        outcome = DateOutcome(trade_date, DateStatus.FAILED, error=describe_failure(e))
                    self._report(tracker, outcome)
                processed += len(batch)

        stopped = processed < len(candidates)
        if stopped:
            logger.warning(f"Job {job.id} stopped with {len(candidates) - processed} dates left PENDING")

        status = JobStatus.COMPLETED if tracker.failed == 0 and not stopped else JobStatus.FAILED
        self.job_store.finalize_job(job.id, status, tracker.completed, tracker.failed, tracker.total_records)

        summary = JobSummary(
            job_id=job.id,
            status=status,
            total_dates=len(candidates),
            completed=tracker.completed,
            failed=tracker.failed,
            total_records=tracker.total_records,
            elapsed_seconds=self._clock() - started,
            stopped=stopped,
            dry_run=dry_run,
        )
        self._log_summary(summary)
        return summary

    def process_date(self, job_id: str, trade_date: date, data_type: str, granularity,
                     dry_run: bool = False) -> DateOutcome:
        """
        Process one date-unit: download, parse and (unless dry-run) load.

        Failures of the unit itself are recorded on its progress row and
        returned as a FAILED outcome; they never affect other dates.
        """
        label = format_date(trade_date)
        unit_started = self._clock()
        self.job_store.mark_downloading(job_id, trade_date)

        try:
            records = self._fetch_records(data_type, trade_date, label)

            if dry_run:
                logger.info(f"[DRY RUN] Would insert {len(records)} records for {label}")
                count = len(records)
            else:
                count = self.loader.bulk_upsert(records, granularity)

        except Exception as e:
            duration_ms = self._elapsed_ms(unit_started)
            reason = describe_failure(e)
            self.job_store.mark_failed(job_id, trade_date, reason, duration_ms)
            if isinstance(e, ObjectNotFoundError):
                logger.info(f"✗ {label} | {reason}")
            else:
                logger.error(f"✗ {label} | {reason}")
            return DateOutcome(trade_date, DateStatus.FAILED, duration_ms=duration_ms, error=reason,
                               not_found=isinstance(e, ObjectNotFoundError))

        duration_ms = self._elapsed_ms(unit_started)
        self.job_store.mark_completed(job_id, trade_date, count, duration_ms)
        return DateOutcome(trade_date, DateStatus.COMPLETED, records=count, duration_ms=duration_ms)

    def _fetch_records(self, data_type: str, trade_date: date, label: str) -> List[PriceBar]:
        key = flatfile_key(data_type, trade_date, self.market)
        with self.storage.download_with_retry(key) as stream:
            result = self.parser.parse(stream, label=label)

        if not result.records:
            raise EmptyPayloadError("No valid records in file")
        return result.records

    def _should_stop(self, started: float, max_runtime_seconds: Optional[float]) -> bool:
        if self._stop_event.is_set():
            return True
        if max_runtime_seconds is not None and self._clock() - started >= max_runtime_seconds:
            logger.warning(f"Max runtime of {max_runtime_seconds}s reached")
            self._stop_event.set()
            return True
        return False

    def _report(self, tracker: ProgressTracker, outcome: DateOutcome):
        snapshot = tracker.record(outcome)

        if outcome.status is DateStatus.COMPLETED:
            seconds = outcome.duration_ms / 1000.0
            speed = outcome.records / seconds if seconds > 0 else 0.0
            logger.info(
                f"✓ {format_date(outcome.trade_date)} | {outcome.records:,} records | {speed:.0f} rec/s | "
                f"Progress: {snapshot.done}/{snapshot.total} | ETA: {snapshot.eta_formatted}"
            )

        if self.progress_callback is not None:
            self.progress_callback(snapshot)

    def _elapsed_ms(self, since: float) -> int:
        return int((self._clock() - since) * 1000)

    @staticmethod
    def _log_summary(summary: JobSummary):
        logger.info("=" * 80)
        logger.info("DOWNLOAD COMPLETE" if not summary.stopped else "DOWNLOAD STOPPED")
        logger.info("=" * 80)
        logger.info(f"Job ID: {summary.job_id}")
        logger.info(f"Total Time: {summary.elapsed_seconds / 60:.2f} minutes ({summary.elapsed_seconds:.2f}s)")
        logger.info(f"Completed: {summary.completed}")
        logger.info(f"Failed: {summary.failed}")
        logger.info(f"Total Records: {summary.total_records:,}")
        logger.info(f"Success Rate: {summary.success_rate:.2f}%")
        logger.info(f"Average Speed: {summary.records_per_second:.0f} records/second")
        logger.info("=" * 80)
