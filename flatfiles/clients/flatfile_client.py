"""
Massive.com Flat Files Client
Downloads per-date compressed CSV files from the S3-compatible flat files bucket.
"""
import gzip
import logging
import time
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, PartialCredentialsError

from common.config.settings import S3Config
from flatfiles.errors import (
    ErrorKind,
    FlatFileError,
    ObjectNotFoundError,
    RetriesExhaustedError,
    backoff_delay,
    should_retry,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound'}
FATAL_CODES = {'403', 'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch', 'NoSuchBucket'}


def classify_error(error: BaseException) -> ErrorKind:
    """
    Classify an object storage failure.

    Args:
        error: Exception raised by boto3/botocore or the network stack

    Returns:
        NOT_FOUND for missing objects, FATAL for credential/permission
        problems, TRANSIENT for everything else
    """
    if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
        return ErrorKind.FATAL

    if isinstance(error, ClientError):
        details = error.response.get('Error', {})
        code = str(details.get('Code', ''))
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')

        if code in NOT_FOUND_CODES or status == 404:
            return ErrorKind.NOT_FOUND
        if code in FATAL_CODES or status in (401, 403):
            return ErrorKind.FATAL
        return ErrorKind.TRANSIENT

    return ErrorKind.TRANSIENT


class DecompressedStream(gzip.GzipFile):
    """
    Gzip reader over a streaming S3 body.

    Decompression happens as the caller reads, so the object is never held in
    memory as a whole. Closing the stream also releases the HTTP body.
    """

    def __init__(self, body):
        super().__init__(fileobj=body, mode='rb')
        self._body = body

    def close(self):
        try:
            super().close()
        finally:
            self._body.close()


class FlatFileClient:
    """
    S3 client for the Massive.com flat files bucket.

    Features:
    - Path-style addressing against a custom endpoint
    - Streaming gzip decompression
    - Exponential backoff retry owned by this client (botocore retries disabled)
    - 404 treated as a terminal, expected outcome (weekends/holidays)

    Stateless per call; one instance is shared by all download threads.
    """

    def __init__(self, config: S3Config, retry_attempts: int = 3, retry_delay: float = 1.0,
                 max_pool_connections: int = 64, s3_client=None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize flat files client.

        Args:
            config: S3 endpoint/credential settings
            retry_attempts: Maximum download attempts per object
            retry_delay: Base backoff delay in seconds
            max_pool_connections: Size of the HTTP connection pool
            s3_client: Pre-built boto3 client (tests inject a stub)
            sleep: Sleep function used between retries
        """
        self.config = config
        self.bucket = config.bucket
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep

        if s3_client is None:
            s3_config = Config(
                signature_version='s3v4',
                s3={'addressing_style': 'path'},
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
                retries={'max_attempts': 0, 'mode': 'standard'},  # Retries handled by download_with_retry
                max_pool_connections=max_pool_connections,
            )
            s3_client = boto3.client(
                's3',
                endpoint_url=config.endpoint,
                aws_access_key_id=config.access_key,
                aws_secret_access_key=config.secret_key,
                region_name=config.region,
                config=s3_config,
            )
            logger.info(f"Flat files client initialized: {config.endpoint}/{config.bucket}")

        self._s3 = s3_client

    def download(self, key: str) -> BinaryIO:
        """
        Download an object and return a decompressed stream.

        Args:
            key: Object key

        Returns:
            Binary file-like object yielding decompressed bytes

        Raises:
            ClientError, BotoCoreError: Passed through for classification
        """
        logger.debug(f"Downloading: {key}")
        response = self._s3.get_object(Bucket=self.bucket, Key=key)
        return DecompressedStream(response['Body'])

    def download_with_retry(self, key: str) -> BinaryIO:
        """
        Download with bounded exponential backoff.

        Args:
            key: Object key

        Returns:
            Decompressed stream

        Raises:
            ObjectNotFoundError: Object absent (never retried)
            FlatFileError: Fatal failure such as bad credentials (never retried)
            RetriesExhaustedError: Transient failures on every attempt
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.retry_attempts):
            try:
                return self.download(key)
            except Exception as e:
                kind = classify_error(e)

                if kind is ErrorKind.NOT_FOUND:
                    raise ObjectNotFoundError(key) from e
                if kind is ErrorKind.FATAL:
                    raise FlatFileError(f"Fatal error downloading {key}: {e}", kind, key=key,
                                        attempts=attempt + 1) from e

                last_error = e
                if not should_retry(kind, attempt + 1, self.retry_attempts):
                    break

                delay = backoff_delay(self.retry_delay, attempt)
                logger.warning(
                    f"Retry {attempt + 1}/{self.retry_attempts} for {key} after {delay:.2f}s: {e}"
                )
                self._sleep(delay)

        raise RetriesExhaustedError(key, self.retry_attempts, last_error) from last_error

    def test_connection(self) -> bool:
        """
        Cheap probe of endpoint and credentials.

        Returns:
            True if the bucket can be listed
        """
        try:
            self._s3.list_objects_v2(Bucket=self.bucket, MaxKeys=1)
            logger.info("✓ S3 connection successful")
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 connection failed: {e}")
            return False

    def file_exists(self, key: str) -> bool:
        """Check if an object exists"""
        return self.get_file_metadata(key) is not None

    def get_file_metadata(self, key: str) -> Optional[Dict]:
        """
        Get object size and last-modified time.

        Returns:
            {'size': int, 'last_modified': datetime} or None if absent
        """
        try:
            response = self._s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if classify_error(e) is ErrorKind.NOT_FOUND:
                return None
            raise

        return {
            'size': response.get('ContentLength', 0),
            'last_modified': response.get('LastModified') or datetime.now(timezone.utc),
        }

    def list_files(self, prefix: str) -> List[str]:
        """
        List object keys under a prefix.

        Args:
            prefix: Key prefix (e.g. 'us_stocks_sip/day_aggs_v1/2024/03/')

        Returns:
            List of keys
        """
        keys = []
        paginator = self._s3.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get('Contents', []):
                keys.append(obj['Key'])
        logger.debug(f"Listed {len(keys)} files under {prefix}")
        return keys

    def close(self):
        """Release pooled HTTP connections"""
        close = getattr(self._s3, 'close', None)
        if close is not None:
            close()
