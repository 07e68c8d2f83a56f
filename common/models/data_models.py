"""
Data models for the flat-file backfill system.
"""
import math
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from datetime import date, datetime

from flatfiles.errors import ReferenceSchemaError


class Granularity(str, Enum):
    """Time resolution of a price bar"""
    DAY = "DAY"
    MINUTE = "MINUTE"


class DataType(str, Enum):
    """Flat-file datasets supported by the pipeline"""
    DAY_AGGS = "day_aggs_v1"
    MINUTE_AGGS = "minute_aggs_v1"

    @property
    def granularity(self) -> Granularity:
        return Granularity.DAY if self is DataType.DAY_AGGS else Granularity.MINUTE


class DateStatus(str, Enum):
    """Per-date state machine: PENDING -> DOWNLOADING -> COMPLETED | FAILED"""
    PENDING = "PENDING"
    DOWNLOADING = "DOWNLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (DateStatus.COMPLETED, DateStatus.FAILED)


class JobStatus(str, Enum):
    """Job-level status"""
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class PriceBar:
    """One OHLCV observation parsed from a flat file"""
    ticker: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int
    vwap: Optional[float] = None
    transactions: Optional[int] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            'ticker': self.ticker,
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
            'vwap': self.vwap,
            'transactions': self.transactions,
        }


def _optional_float(payload: Dict[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ReferenceSchemaError(f"Field {key!r} must be numeric, got {value!r}")
    if not math.isfinite(value):
        return None
    return float(value)


def _optional_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None or value == '':
        return None
    return str(value)


@dataclass
class TickerResult:
    """
    Wire shape of one entry in the reference API's ``results`` array.

    Parsed once at the API boundary; everything downstream works with this
    object rather than the raw JSON dictionary.
    """
    ticker: str
    name: str
    market: Optional[str] = None
    locale: Optional[str] = None
    primary_exchange: Optional[str] = None
    type: Optional[str] = None
    active: bool = True
    currency_name: Optional[str] = None
    cik: Optional[str] = None
    composite_figi: Optional[str] = None
    market_cap: Optional[float] = None
    sic_description: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> 'TickerResult':
        """
        Validate and convert one API result.

        Raises:
            ReferenceSchemaError: If the payload is not an object or lacks a ticker
        """
        if not isinstance(payload, dict):
            raise ReferenceSchemaError(f"Ticker result must be an object, got {type(payload).__name__}")

        ticker = payload.get('ticker')
        if not isinstance(ticker, str) or not ticker.strip():
            raise ReferenceSchemaError(f"Ticker result missing 'ticker': {payload!r}")
        ticker = ticker.strip()

        name = payload.get('name')
        if not isinstance(name, str) or not name.strip():
            name = ticker

        return cls(
            ticker=ticker,
            name=name.strip(),
            market=_optional_str(payload, 'market'),
            locale=_optional_str(payload, 'locale'),
            primary_exchange=_optional_str(payload, 'primary_exchange'),
            type=_optional_str(payload, 'type'),
            active=bool(payload.get('active', True)),
            currency_name=_optional_str(payload, 'currency_name'),
            cik=_optional_str(payload, 'cik'),
            composite_figi=_optional_str(payload, 'composite_figi'),
            market_cap=_optional_float(payload, 'market_cap'),
            sic_description=_optional_str(payload, 'sic_description'),
        )

    def to_instrument(self) -> 'Instrument':
        """Map the wire record onto the instrument table's columns"""
        return Instrument(
            symbol=self.ticker,
            name=self.name,
            sector=self.sic_description,
            market_cap=self.market_cap,
            instrument_type=self.type,
            primary_exchange=self.primary_exchange,
        )


@dataclass
class Instrument:
    """Instrument (stock or fund) as stored in the instruments table"""
    symbol: str
    name: str
    sector: Optional[str] = None
    market_cap: Optional[float] = None
    instrument_type: Optional[str] = None
    primary_exchange: Optional[str] = None
    current_price: float = 0.0
    first_trade_date: Optional[date] = None
    last_trade_date: Optional[date] = None
    id: Optional[int] = None


@dataclass
class IngestionJob:
    """One bulk download run"""
    id: str
    data_type: str
    start_date: date
    end_date: date
    concurrency: int
    total_dates: int
    status: JobStatus = JobStatus.IN_PROGRESS
    completed_dates: int = 0
    failed_dates: int = 0
    total_records: int = 0
    dry_run: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_db_row(cls, row: tuple) -> 'IngestionJob':
        """Create instance from database row"""
        return cls(
            id=row[0],
            data_type=row[1],
            start_date=row[2],
            end_date=row[3],
            concurrency=row[4],
            total_dates=row[5],
            completed_dates=row[6],
            failed_dates=row[7],
            total_records=row[8],
            status=JobStatus(row[9]),
            dry_run=row[10],
            started_at=row[11],
            completed_at=row[12],
        )


@dataclass
class DateProgress:
    """Progress of one candidate date within a job"""
    job_id: str
    trade_date: date
    status: DateStatus = DateStatus.PENDING
    records_processed: int = 0
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_db_row(cls, row: tuple) -> 'DateProgress':
        """Create instance from database row"""
        return cls(
            job_id=row[0],
            trade_date=row[1],
            status=DateStatus(row[2]),
            records_processed=row[3] or 0,
            error_message=row[4],
            duration_ms=row[5],
            started_at=row[6],
            completed_at=row[7],
        )


@dataclass
class DateOutcome:
    """Result of processing one date-unit"""
    trade_date: date
    status: DateStatus
    records: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    not_found: bool = False


@dataclass
class JobProgress:
    """Aggregate view of a job's DateProgress ledger"""
    job_id: str
    total: int
    completed: int
    failed: int
    pending: int
    total_records: int
    failed_dates: List[DateProgress] = field(default_factory=list)


@dataclass
class JobSummary:
    """Run summary returned by the orchestrator"""
    job_id: str
    status: JobStatus
    total_dates: int
    completed: int
    failed: int
    total_records: int
    elapsed_seconds: float
    stopped: bool = False
    dry_run: bool = False

    @property
    def success_rate(self) -> float:
        if self.total_dates == 0:
            return 0.0
        return self.completed / self.total_dates * 100.0

    @property
    def records_per_second(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.total_records / self.elapsed_seconds
