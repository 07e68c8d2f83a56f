"""
Configuration settings for the flat-file backfill system.
Centralizes all configurable parameters for downloads, storage and logging.
"""
import os
from dataclasses import dataclass, field
from datetime import date
from typing import Optional
from dotenv import load_dotenv

from flatfiles.errors import ConfigurationError

# Load environment variables
load_dotenv()

SUPPORTED_DATA_TYPES = ('day_aggs_v1', 'minute_aggs_v1')

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 50
MIN_BATCH_SIZE = 100
MAX_BATCH_SIZE = 10000


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class S3Config:
    """S3/Flat files configuration"""
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    endpoint: Optional[str] = None
    bucket: Optional[str] = None
    market: Optional[str] = None
    region: str = 'us-east-1'
    connect_timeout: int = 10
    read_timeout: int = 60

    def __post_init__(self):
        if self.access_key is None:
            self.access_key = os.getenv('MASSIVE_S3_ACCESS_KEY')
        if self.secret_key is None:
            self.secret_key = os.getenv('MASSIVE_S3_SECRET_KEY')
        self.endpoint = self.endpoint or os.getenv('MASSIVE_S3_ENDPOINT', 'https://files.massive.com')
        self.bucket = self.bucket or os.getenv('MASSIVE_S3_BUCKET', 'flatfiles')
        self.market = self.market or os.getenv('MASSIVE_S3_MARKET', 'us_stocks_sip')


@dataclass
class DownloadConfig:
    """Download run settings"""
    data_type: str = 'day_aggs_v1'
    start_date: date = date(2020, 1, 1)
    end_date: date = field(default_factory=date.today)
    concurrency: Optional[int] = None
    retry_attempts: Optional[int] = None
    retry_delay_ms: Optional[int] = None
    max_runtime_seconds: Optional[float] = None

    def __post_init__(self):
        if self.concurrency is None:
            self.concurrency = _env_int('DOWNLOAD_CONCURRENCY', 15)
        if self.retry_attempts is None:
            self.retry_attempts = _env_int('DOWNLOAD_RETRY_ATTEMPTS', 3)
        if self.retry_delay_ms is None:
            self.retry_delay_ms = _env_int('DOWNLOAD_RETRY_DELAY_MS', 1000)

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay_ms / 1000.0


@dataclass
class DatabaseConfig:
    """Database configuration (PostgreSQL / TimescaleDB)"""
    dsn: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    batch_size: Optional[int] = None
    pool_size: Optional[int] = None
    use_copy: Optional[bool] = None

    def __post_init__(self):
        self.dsn = self.dsn or os.getenv('DATABASE_URL')
        self.host = self.host or os.getenv('DB_HOST', 'localhost')
        self.port = self.port or _env_int('DB_PORT', 5432)
        self.database = self.database or os.getenv('DB_NAME', 'trading')
        self.user = self.user or os.getenv('DB_USER', 'postgres')
        self.password = self.password or os.getenv('DB_PASSWORD')
        if self.batch_size is None:
            self.batch_size = _env_int('DB_BATCH_SIZE', 1000)
        if self.pool_size is None:
            self.pool_size = _env_int('DB_POOL_SIZE', 10)
        if self.use_copy is None:
            self.use_copy = _env_bool('DB_USE_COPY', True)


@dataclass
class ReferenceApiConfig:
    """Massive reference data API configuration"""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    page_pause_seconds: float = 0.1
    max_retries: int = 3
    timeout: int = 30

    def __post_init__(self):
        if self.api_key is None:
            self.api_key = os.getenv('MASSIVE_API_KEY')
        self.base_url = (self.base_url or os.getenv('MASSIVE_BASE_URL', 'https://api.massive.com')).rstrip('/')


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: Optional[str] = None
    log_to_file: Optional[bool] = None
    log_file_path: Optional[str] = None

    def __post_init__(self):
        self.level = (self.level or os.getenv('LOG_LEVEL', 'info')).upper()
        if self.log_to_file is None:
            self.log_to_file = _env_bool('LOG_TO_FILE', False)
        self.log_file_path = self.log_file_path or os.getenv('LOG_FILE_PATH', './logs/bulk-download.log')


@dataclass
class BulkDownloadConfig:
    """Complete bulk download configuration"""
    s3: S3Config
    download: DownloadConfig
    database: DatabaseConfig
    reference: ReferenceApiConfig
    logging: LoggingConfig

    @classmethod
    def default(cls):
        """Create default configuration"""
        return cls(
            s3=S3Config(),
            download=DownloadConfig(),
            database=DatabaseConfig(),
            reference=ReferenceApiConfig(),
            logging=LoggingConfig(),
        )

    def validate(self, require_s3: bool = True) -> None:
        """
        Validate configuration before any work is scheduled.

        Args:
            require_s3: Whether flat-file credentials are mandatory

        Raises:
            ConfigurationError: If any setting is missing or out of range
        """
        if require_s3 and (not self.s3.access_key or not self.s3.secret_key):
            raise ConfigurationError(
                "Missing S3 credentials. Set MASSIVE_S3_ACCESS_KEY and MASSIVE_S3_SECRET_KEY environment variables."
            )

        validate_download_settings(
            self.download.data_type,
            self.download.start_date,
            self.download.end_date,
            self.download.concurrency,
        )

        if self.download.retry_attempts < 1:
            raise ConfigurationError("Retry attempts must be at least 1")
        if self.download.retry_delay_ms < 0:
            raise ConfigurationError("Retry delay must not be negative")

        if not MIN_BATCH_SIZE <= self.database.batch_size <= MAX_BATCH_SIZE:
            raise ConfigurationError(
                f"Batch size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}"
            )
        if self.database.pool_size < 1:
            raise ConfigurationError("Connection pool size must be at least 1")


def validate_download_settings(data_type: str, start_date: date, end_date: date, concurrency: int) -> None:
    """
    Validate the settings that define a download run.

    Raises:
        ConfigurationError: On unknown data type, inverted range or bad concurrency
    """
    if data_type not in SUPPORTED_DATA_TYPES:
        raise ConfigurationError(
            f"Unsupported data type {data_type!r}. Choose one of: {', '.join(SUPPORTED_DATA_TYPES)}"
        )
    if start_date > end_date:
        raise ConfigurationError("Start date must not be after end date")
    if not MIN_CONCURRENCY <= concurrency <= MAX_CONCURRENCY:
        raise ConfigurationError(
            f"Concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}"
        )
