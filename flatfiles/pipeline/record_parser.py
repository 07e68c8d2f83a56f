"""
Flat File Record Parser
Turns a decompressed aggregates CSV stream into PriceBar records.

Format (header-driven, column order is not assumed):
    ticker,volume,open,close,high,low,window_start,transactions[,vwap]
"""
import csv
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import BinaryIO, Dict, Iterator, List, Optional

from common.models.data_models import PriceBar

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ('ticker', 'volume', 'open', 'close', 'high', 'low', 'window_start')
OPTIONAL_COLUMNS = ('transactions', 'vwap')


class RowError(ValueError):
    """A single CSV row could not be converted"""


@dataclass
class ParseResult:
    """Outcome of parsing one file"""
    records: List[PriceBar] = field(default_factory=list)
    skipped: int = 0
    skip_reasons: Dict[str, int] = field(default_factory=dict)

    @property
    def total_rows(self) -> int:
        return len(self.records) + self.skipped

    def skip(self, reason: str):
        self.skipped += 1
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1


def _require(row: Dict[str, Optional[str]], column: str) -> str:
    value = row.get(column)
    if value is None:
        raise RowError(f"missing_{column}")
    value = value.strip()
    if not value:
        raise RowError(f"missing_{column}")
    return value


def _to_float(value: str, column: str) -> float:
    try:
        number = float(value)
    except (ValueError, TypeError, OverflowError):
        raise RowError(f"invalid_{column}")
    if not math.isfinite(number):
        raise RowError(f"invalid_{column}")
    return number


def _to_int(value: str, column: str) -> int:
    try:
        return int(value)
    except ValueError:
        # Volumes are occasionally published as "1234.0"
        number = _to_float(value, column)
        if not number.is_integer():
            raise RowError(f"invalid_{column}")
        return int(number)


def _optional(row: Dict[str, Optional[str]], column: str) -> Optional[str]:
    value = row.get(column)
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_window_start(value: str) -> datetime:
    """
    Parse a window_start value into a UTC datetime.

    Epoch integers are accepted in nanoseconds, milliseconds or seconds (unit
    detected by magnitude); anything else is read as ISO-8601.

    Raises:
        RowError: If the value cannot be interpreted
    """
    try:
        raw = int(value)
    except ValueError:
        raw = None

    if raw is not None:
        if raw > 1e17:  # Nanoseconds
            seconds, nanos = divmod(raw, 1_000_000_000)
            micros = nanos // 1000
        elif raw > 1e11:  # Milliseconds
            seconds, millis = divmod(raw, 1000)
            micros = millis * 1000
        else:  # Seconds
            seconds, micros = raw, 0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=micros)
        except (OverflowError, OSError, ValueError):
            raise RowError("invalid_window_start")

    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise RowError("invalid_window_start")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_row(row: Dict[str, Optional[str]]) -> PriceBar:
    """
    Convert one CSV row into a PriceBar.

    Raises:
        RowError: On a missing required column or a non-numeric value
    """
    ticker = _require(row, 'ticker')

    open_ = _to_float(_require(row, 'open'), 'open')
    high = _to_float(_require(row, 'high'), 'high')
    low = _to_float(_require(row, 'low'), 'low')
    close = _to_float(_require(row, 'close'), 'close')
    volume = _to_int(_require(row, 'volume'), 'volume')
    timestamp = parse_window_start(_require(row, 'window_start'))

    vwap_raw = _optional(row, 'vwap')
    transactions_raw = _optional(row, 'transactions')

    return PriceBar(
        ticker=ticker,
        timestamp=timestamp,
        open=open_,
        high=high,
        low=low,
        close=close,
        volume=volume,
        vwap=_to_float(vwap_raw, 'vwap') if vwap_raw is not None else None,
        transactions=_to_int(transactions_raw, 'transactions') if transactions_raw is not None else None,
    )


class RecordParser:
    """
    Streaming parser for day/minute aggregate flat files.

    Malformed rows are skipped and counted; they never abort the file. That
    covers undecodable bytes (``invalid_encoding``) and lines the csv module
    rejects (``invalid_csv``) as well as bad values.
    """

    def __init__(self, encoding: str = 'utf-8'):
        self.encoding = encoding

    def _decoded_lines(self, stream: BinaryIO, result: ParseResult) -> Iterator[str]:
        for raw in stream:
            try:
                yield raw.decode(self.encoding)
            except UnicodeDecodeError:
                result.skip('invalid_encoding')

    def _rows(self, reader, result: ParseResult) -> Iterator[List[str]]:
        while True:
            try:
                values = next(reader)
            except StopIteration:
                return
            except csv.Error:
                # The reader resets and resumes on the following line
                result.skip('invalid_csv')
                continue
            if any(v.strip() for v in values):
                yield values

    def parse(self, stream: BinaryIO, label: str = '') -> ParseResult:
        """
        Parse a decompressed binary stream.

        Args:
            stream: Binary file-like object (decompressed CSV); left open
            label: Name used in log messages (usually the trade date)

        Returns:
            ParseResult with valid records and skip counts
        """
        result = ParseResult()
        reader = csv.reader(self._decoded_lines(stream, result), skipinitialspace=True)
        rows = self._rows(reader, result)

        header = [h.strip() for h in next(rows, [])]
        missing = [c for c in REQUIRED_COLUMNS if c not in header]
        if header and missing:
            logger.warning(f"{label or 'file'}: header missing columns {missing}; every row will be skipped")

        for values in rows:
            try:
                result.records.append(parse_row(dict(zip(header, values))))
            except RowError as e:
                result.skip(str(e))

        if result.skipped:
            logger.warning(f"Skipped {result.skipped} malformed rows in {label or 'file'}: {result.skip_reasons}")
        logger.debug(f"Parsed {len(result.records)} records from {label or 'file'}")
        return result
