"""
Massive.com clients (reference REST API and S3 flat files)
"""
from .massive_client import MassiveClient, RateLimiter
from .reference_client import ReferenceClient
from .flatfile_client import FlatFileClient, classify_error

__all__ = [
    'MassiveClient',
    'RateLimiter',
    'ReferenceClient',
    'FlatFileClient',
    'classify_error',
]
