#!/usr/bin/env python3
"""
Flat-File Backfill - CLI Entry Point

Bulk historical price download from Massive.com flat files:
- Instrument discovery from the reference API
- Parallel per-date downloads with retry/backoff
- COPY-based bulk loads into PostgreSQL
- Resumable per-date progress tracking
"""
import argparse
import logging
import signal
import sys
from typing import List, Optional

import psycopg2
from tqdm import tqdm

from common.config.settings import SUPPORTED_DATA_TYPES, BulkDownloadConfig
from flatfiles.calendar import format_date, generate_trading_dates, parse_date
from flatfiles.clients.flatfile_client import FlatFileClient
from flatfiles.clients.massive_client import MassiveClient
from flatfiles.clients.reference_client import ReferenceClient
from flatfiles.errors import FlatFileBackfillError
from flatfiles.orchestrator import BulkDownloadOrchestrator
from flatfiles.pipeline.discovery import InstrumentDiscovery
from flatfiles.utils.progress import ProgressSnapshot
from flatfiles.utils.structured_logging import configure_logging, get_logger
from storage.timescale.writer import TimescaleWriter

LOG_LEVELS = ['DEBUG', 'INFO', 'WARN', 'ERROR']


def _date_arg(text: str):
    try:
        return parse_date(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {text!r}, expected YYYY-MM-DD")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog='flatfile-backfill',
        description='Bulk historical data download from Massive.com flat files',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Seed the instruments table
  %(prog)s discover

  # Download daily bars for 2024
  %(prog)s download --start-date 2024-01-01 --end-date 2024-12-31 --concurrency 20

  # Parse without loading
  %(prog)s download --start-date 2024-03-01 --end-date 2024-03-31 --dry-run

  # Retry the failed/pending dates of an earlier job
  %(prog)s download --resume-job 4f1c2d...

  # Show progress of a job
  %(prog)s status 4f1c2d...
        """
    )

    parser.add_argument(
        '--log-level',
        type=str.upper,
        choices=LOG_LEVELS,
        default=None,
        help='Set logging level (default: $LOG_LEVEL or INFO)'
    )

    parser.add_argument(
        '--log-file',
        type=str,
        default=None,
        help='Also write logs to this file (default: $LOG_FILE_PATH when LOG_TO_FILE=true)'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    download = subparsers.add_parser('download', help='Download flat files and load price history')
    download.add_argument(
        '--data-type',
        choices=SUPPORTED_DATA_TYPES,
        default=None,
        help='Flat-file dataset (default: day_aggs_v1)'
    )
    download.add_argument('--start-date', type=_date_arg, default=None, help='First date, YYYY-MM-DD (default: 2020-01-01)')
    download.add_argument('--end-date', type=_date_arg, default=None, help='Last date, YYYY-MM-DD (default: today)')
    download.add_argument(
        '--concurrency',
        type=int,
        default=None,
        help='Dates downloaded in parallel, 1-50 (default: $DOWNLOAD_CONCURRENCY or 15)'
    )
    download.add_argument('--dry-run', action='store_true', help='Download and parse without writing price rows')
    download.add_argument('--resume-job', type=str, metavar='JOB_ID', help='Process the unfinished dates of an earlier job')
    download.add_argument('--max-runtime', type=float, metavar='SECONDS', help='Stop scheduling new dates after this long')
    download.add_argument('--no-copy', action='store_true', help='Stage rows with multi-row INSERT instead of COPY')

    discover = subparsers.add_parser('discover', help='Fetch tickers from the reference API into instruments')
    discover.add_argument('--etf-limit', type=int, default=1000, help='Top ETFs by market cap to include (default: 1000)')
    discover.add_argument('--market', type=str, default='stocks', help='Market of the full ticker listing (default: stocks)')

    status = subparsers.add_parser('status', help='Show progress of a download job')
    status.add_argument('job_id', type=str, help='Job id')

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> BulkDownloadConfig:
    """Environment defaults overridden by command-line flags."""
    config = BulkDownloadConfig.default()

    if getattr(args, 'data_type', None):
        config.download.data_type = args.data_type
    if getattr(args, 'start_date', None):
        config.download.start_date = args.start_date
    if getattr(args, 'end_date', None):
        config.download.end_date = args.end_date
    if getattr(args, 'concurrency', None) is not None:
        config.download.concurrency = args.concurrency
    if getattr(args, 'max_runtime', None) is not None:
        config.download.max_runtime_seconds = args.max_runtime
    if getattr(args, 'no_copy', False):
        config.database.use_copy = False

    if args.log_level:
        config.logging.level = args.log_level
    if args.log_file:
        config.logging.log_to_file = True
        config.logging.log_file_path = args.log_file

    return config


def install_signal_handlers(orchestrator: BulkDownloadOrchestrator):
    """SIGINT/SIGTERM request a graceful stop; a second SIGINT aborts."""
    def _handle(signum, frame):
        if signum == signal.SIGINT and orchestrator.stop_requested:
            raise KeyboardInterrupt
        orchestrator.request_stop()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def cmd_download(args: argparse.Namespace, config: BulkDownloadConfig, logger) -> int:
    """Run (or resume) a download job."""
    download = config.download
    config.validate(require_s3=True)

    writer = TimescaleWriter.from_config(config.database, concurrency=download.concurrency)
    storage = FlatFileClient(
        config.s3,
        retry_attempts=download.retry_attempts,
        retry_delay=download.retry_delay_seconds,
        max_pool_connections=max(10, download.concurrency * 2),
    )

    try:
        dates = None
        if args.resume_job:
            previous = writer.get_job(args.resume_job)
            if previous is None:
                logger.error("resume_job_not_found", job_id=args.resume_job)
                return 1
            dates = writer.get_resumable_dates(previous.id)
            if not dates:
                logger.info("resume_nothing_to_do", job_id=previous.id)
                return 0
            download.data_type = previous.data_type
            download.start_date = previous.start_date
            download.end_date = previous.end_date
            logger.info("resume_job", job_id=previous.id, dates=len(dates))

        total = len(dates) if dates else len(generate_trading_dates(download.start_date, download.end_date))
        bar = tqdm(total=total, desc=download.data_type, unit='date')

        def on_progress(snapshot: ProgressSnapshot):
            bar.update(1)
            bar.set_postfix(ok=snapshot.completed, failed=snapshot.failed,
                            records=snapshot.total_records, eta=snapshot.eta_formatted)

        orchestrator = BulkDownloadOrchestrator(
            storage=storage,
            job_store=writer,
            loader=writer,
            market=config.s3.market,
            progress_callback=on_progress,
        )
        install_signal_handlers(orchestrator)

        logger.info(
            "download_starting",
            data_type=download.data_type,
            start_date=format_date(download.start_date),
            end_date=format_date(download.end_date),
            concurrency=download.concurrency,
            dry_run=args.dry_run,
        )

        try:
            summary = orchestrator.run(
                data_type=download.data_type,
                start_date=download.start_date,
                end_date=download.end_date,
                concurrency=download.concurrency,
                dry_run=args.dry_run,
                max_runtime_seconds=download.max_runtime_seconds,
                dates=dates,
            )
        finally:
            bar.close()

        job_log = logger.bind(job_id=summary.job_id)
        job_log.info(
            "download_finished",
            status=summary.status.value,
            completed=summary.completed,
            failed=summary.failed,
            total_records=summary.total_records,
            elapsed_seconds=round(summary.elapsed_seconds, 2),
            stopped=summary.stopped,
        )

        if not args.dry_run:
            job_log.info("database_size", size=writer.database_size())

        if summary.failed or summary.stopped:
            job_log.warn(
                "download_incomplete",
                hint=f"flatfile-backfill status {summary.job_id}  |  flatfile-backfill download --resume-job {summary.job_id}",
            )
        return 0 if summary.completed == summary.total_dates else 1
    finally:
        storage.close()
        writer.close()


def cmd_discover(args: argparse.Namespace, config: BulkDownloadConfig, logger) -> int:
    """Fetch reference tickers and upsert instruments."""
    reference = config.reference
    client = MassiveClient(
        reference.api_key,
        base_url=reference.base_url,
        max_retries=reference.max_retries,
        timeout=reference.timeout,
        page_pause_seconds=reference.page_pause_seconds,
    )
    writer = TimescaleWriter.from_config(config.database)

    try:
        discovery = InstrumentDiscovery(ReferenceClient(client), writer)
        result = discovery.run(etf_limit=args.etf_limit, market=args.market)
        logger.info(
            "discovery_finished",
            stocks=result.stocks,
            etfs=result.etfs,
            created=result.created,
            updated=result.updated,
            failed_updates=result.failed_updates,
            total_in_db=result.total_in_db,
        )
        return 0
    finally:
        client.close()
        writer.close()


def cmd_status(args: argparse.Namespace, config: BulkDownloadConfig, logger) -> int:
    """Print progress counts and failed dates of a job."""
    writer = TimescaleWriter.from_config(config.database)
    try:
        job = writer.get_job(args.job_id)
        if job is None:
            logger.error("job_not_found", job_id=args.job_id)
            return 1

        progress = writer.get_progress(job.id)
        print(f"Job {job.id} [{job.status.value}] {job.data_type} "
              f"{format_date(job.start_date)} -> {format_date(job.end_date)}")
        print(f"  Completed: {progress.completed}/{progress.total}")
        print(f"  Failed:    {progress.failed}")
        print(f"  Pending:   {progress.pending}")
        print(f"  Records:   {progress.total_records:,}")
        for row in progress.failed_dates:
            print(f"  ✗ {format_date(row.trade_date)}: {row.error_message}")
        return 0
    finally:
        writer.close()


COMMANDS = {
    'download': cmd_download,
    'discover': cmd_discover,
    'status': cmd_status,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    config = build_config(args)

    configure_logging(
        config.logging.level,
        config.logging.log_file_path if config.logging.log_to_file else None,
    )
    level_name = 'WARNING' if config.logging.level == 'WARN' else config.logging.level
    logger = get_logger('flatfile_backfill', level=getattr(logging, level_name, logging.INFO))

    try:
        return COMMANDS[args.command](args, config, logger)
    except FlatFileBackfillError as e:
        logger.error("run_aborted", command=args.command, error_type=type(e).__name__, error=str(e))
        return 1
    except psycopg2.Error as e:
        logger.error("database_error", command=args.command, error=str(e).strip())
        return 1


def run():
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(130)


if __name__ == '__main__':
    run()
