"""Structured logging for flat-file backfill runs."""
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = '%(asctime)s [%(threadName)-15s] %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = 'INFO', log_file: Optional[str] = None) -> None:
    """
    Install console (and optional file) handlers on the root logger.

    Safe to call more than once; previously installed handlers are replaced.

    Args:
        level: Level name (debug, info, warn, error)
        log_file: Optional path of a log file; parent directories are created
    """
    name = level.upper()
    if name == 'WARN':
        name = 'WARNING'

    handlers = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path))

    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )

    # boto3/urllib3 are chatty at DEBUG
    for noisy in ('botocore', 'boto3', 'urllib3', 's3transfer'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


LEVEL_NAMES = {
    logging.DEBUG: 'DEBUG',
    logging.INFO: 'INFO',
    logging.WARNING: 'WARN',
    logging.ERROR: 'ERROR',
}


class JsonLineFormatter(logging.Formatter):
    """Render a record as one JSON object; event fields come from ``record.fields``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'time': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z'),
            'level': LEVEL_NAMES.get(record.levelno, record.levelname),
            'message': record.getMessage(),
        }
        entry.update(getattr(record, 'fields', {}))
        return json.dumps(entry, default=str)


class StructuredLogger:
    """
    JSON lines on stdout for job lifecycle events.

    Example line:
    {"time": "2025-01-13T14:00:00.000Z", "level": "INFO", "message": "download_finished",
     "job_id": "4f1c...", "completed": 4, "failed": 1, "total_records": 400}

    Dates, datetimes and enums are written with ``str()``.
    """

    def __init__(self, name: str, level: int = logging.INFO, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.propagate = False
        self.context = dict(context or {})

        if not any(isinstance(h.formatter, JsonLineFormatter) for h in self.logger.handlers):
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(JsonLineFormatter())
            self.logger.addHandler(handler)

    def _emit(self, level: int, event: str, fields: Dict[str, Any]) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, event, extra={'fields': {**self.context, **fields}})

    def debug(self, event: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, event, fields)

    def info(self, event: str, **fields: Any) -> None:
        self._emit(logging.INFO, event, fields)

    def warn(self, event: str, **fields: Any) -> None:
        self._emit(logging.WARNING, event, fields)

    def error(self, event: str, **fields: Any) -> None:
        self._emit(logging.ERROR, event, fields)

    def bind(self, **fields: Any) -> 'StructuredLogger':
        """
        Logger sharing this one's handler with extra fields on every line.

        Example:
            job_log = logger.bind(job_id=summary.job_id)
            job_log.info("download_finished", completed=4)
        """
        bound = StructuredLogger.__new__(StructuredLogger)
        bound.logger = self.logger
        bound.context = {**self.context, **fields}
        return bound


def get_logger(name: str, level: int = logging.INFO) -> StructuredLogger:
    """
    Get or create structured logger.

    Args:
        name: Logger name
        level: Log level

    Returns:
        StructuredLogger instance
    """
    return StructuredLogger(name, level)
