"""
Download job repository.

Persists flatfile_download_jobs rows and their per-date progress ledger.
"""
import logging
import uuid
from datetime import date
from typing import List, Optional, Sequence

from psycopg2 import extras

from common.models.data_models import (
    DateProgress,
    DateStatus,
    IngestionJob,
    JobProgress,
    JobStatus,
)

logger = logging.getLogger(__name__)

JOB_COLUMNS = """
    id, data_type, start_date, end_date, concurrency, total_dates,
    completed_dates, failed_dates, total_records, status, dry_run,
    started_at, completed_at
"""

PROGRESS_COLUMNS = """
    job_id, trade_date, status, records_processed, error_message,
    duration_ms, started_at, completed_at
"""


class JobRepository:
    """
    Repository for download jobs.

    Responsibilities:
    - Create a job together with one PENDING progress row per date
    - Move each date through DOWNLOADING to COMPLETED or FAILED
    - Finalize job totals and status
    - Read jobs back for status reports and resumption
    """

    def __init__(self, pool):
        """
        Initialize job repository.

        Args:
            pool: PostgresConnectionPool instance
        """
        self.pool = pool

    def create_job(self, data_type: str, start_date: date, end_date: date, concurrency: int,
                   dates: Sequence[date], dry_run: bool = False) -> IngestionJob:
        """
        Create a job and its progress rows in one transaction.

        Args:
            data_type: Flat-file dataset (day_aggs_v1, ...)
            start_date: First requested date
            end_date: Last requested date
            concurrency: Dates processed in parallel
            dates: Candidate trading dates
            dry_run: Whether loads are skipped

        Returns:
            The created IngestionJob
        """
        job_id = uuid.uuid4().hex

        with self.pool.get_connection() as conn:
            cur = conn.cursor()

            cur.execute(f"""
                INSERT INTO flatfile_download_jobs
                (id, data_type, start_date, end_date, concurrency, total_dates,
                 status, dry_run, started_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, NOW())
                RETURNING {JOB_COLUMNS}
            """, (job_id, data_type, start_date, end_date, concurrency, len(dates),
                  JobStatus.IN_PROGRESS.value, dry_run))
            job = IngestionJob.from_db_row(cur.fetchone())

            extras.execute_values(cur, """
                INSERT INTO date_download_progress (job_id, trade_date, status)
                VALUES %s
            """, [(job_id, d, DateStatus.PENDING.value) for d in dates], page_size=1000)

            conn.commit()

        logger.info(f"✓ Job created: {job_id} ({len(dates)} dates)")
        return job

    def mark_downloading(self, job_id: str, trade_date: date):
        """PENDING -> DOWNLOADING"""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                UPDATE date_download_progress
                SET status = %s, started_at = NOW()
                WHERE job_id = %s AND trade_date = %s
            """, (DateStatus.DOWNLOADING.value, job_id, trade_date))
            conn.commit()

    def mark_completed(self, job_id: str, trade_date: date, records: int, duration_ms: int):
        """DOWNLOADING -> COMPLETED"""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                UPDATE date_download_progress
                SET status = %s, records_processed = %s, duration_ms = %s,
                    error_message = NULL, completed_at = NOW()
                WHERE job_id = %s AND trade_date = %s
            """, (DateStatus.COMPLETED.value, records, duration_ms, job_id, trade_date))
            conn.commit()

    def mark_failed(self, job_id: str, trade_date: date, error_message: str, duration_ms: int):
        """DOWNLOADING -> FAILED (message truncated to 500 characters)"""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                UPDATE date_download_progress
                SET status = %s, error_message = %s, duration_ms = %s, completed_at = NOW()
                WHERE job_id = %s AND trade_date = %s
            """, (DateStatus.FAILED.value, (error_message or '')[:500], duration_ms, job_id, trade_date))
            conn.commit()

    def finalize_job(self, job_id: str, status: JobStatus, completed: int, failed: int,
                     total_records: int):
        """Write final totals; the job is not modified afterwards"""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                UPDATE flatfile_download_jobs
                SET status = %s, completed_dates = %s, failed_dates = %s,
                    total_records = %s, completed_at = NOW()
                WHERE id = %s
            """, (JobStatus(status).value, completed, failed, total_records, job_id))
            conn.commit()
        logger.info(f"Job {job_id} finalized: {JobStatus(status).value}")

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        """Fetch a job by id, or None"""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {JOB_COLUMNS} FROM flatfile_download_jobs WHERE id = %s", (job_id,))
            row = cur.fetchone()
        return IngestionJob.from_db_row(row) if row else None

    def get_date_progress(self, job_id: str) -> List[DateProgress]:
        """All progress rows of a job, by date"""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"""
                SELECT {PROGRESS_COLUMNS}
                FROM date_download_progress
                WHERE job_id = %s
                ORDER BY trade_date
            """, (job_id,))
            rows = cur.fetchall()
        return [DateProgress.from_db_row(r) for r in rows]

    def get_progress(self, job_id: str) -> JobProgress:
        """
        Aggregate a job's progress ledger.

        DOWNLOADING rows count as pending: they are not finished yet.

        Raises:
            LookupError: If the job does not exist
        """
        job = self.get_job(job_id)
        if job is None:
            raise LookupError(f"Job {job_id} not found")

        rows = self.get_date_progress(job_id)
        completed = [r for r in rows if r.status is DateStatus.COMPLETED]
        failed = [r for r in rows if r.status is DateStatus.FAILED]

        return JobProgress(
            job_id=job_id,
            total=job.total_dates,
            completed=len(completed),
            failed=len(failed),
            pending=len(rows) - len(completed) - len(failed),
            total_records=sum(r.records_processed for r in rows),
            failed_dates=failed,
        )

    def get_resumable_dates(self, job_id: str) -> List[date]:
        """
        Dates of a job that still need work (PENDING, DOWNLOADING or FAILED).

        A DOWNLOADING row only survives an interrupted process, so it is
        treated the same as PENDING.
        """
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                SELECT trade_date
                FROM date_download_progress
                WHERE job_id = %s AND status <> %s
                ORDER BY trade_date
            """, (job_id, DateStatus.COMPLETED.value))
            return [row[0] for row in cur.fetchall()]
