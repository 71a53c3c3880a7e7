"""
Utility functions for the Hive signer.

Provides hashing, time and comparison helpers shared by the core modules.
"""

import hashlib
import hmac
import secrets
import time
from datetime import datetime, timezone
from typing import Union


def sha256_bytes(data: Union[bytes, str]) -> bytes:
    """Compute SHA-256 hash and return as bytes."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).digest()


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def double_sha256(data: bytes) -> bytes:
    """SHA-256 applied twice, as used by base58check checksums."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def utc_iso(ts_epoch: float) -> str:
    """Convert Unix timestamp to an ISO-8601 UTC string with milliseconds."""
    dt = datetime.fromtimestamp(ts_epoch, tz=timezone.utc)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def filename_timestamp(ts_epoch: float) -> str:
    """
    Timestamp usable inside a file name.

    Lexicographic order of the result matches chronological order.
    """
    dt = datetime.fromtimestamp(ts_epoch, tz=timezone.utc)
    return dt.strftime('%Y-%m-%dT%H-%M-%S-%fZ')


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


def generate_id(length: int = 16) -> str:
    """Generate a cryptographically secure random ID (hex, ``length`` bytes)."""
    return secrets.token_hex(length)

