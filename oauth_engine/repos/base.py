"""Primitives shared by every store implementation."""

from __future__ import annotations

import hashlib
import secrets
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], int]

# 32 random bytes → 256 bits of entropy, URL-safe base64 (43 chars).
SECRET_BYTES = 32


class StoreError(Exception):
    """The backing datastore failed (unreachable, timed out, constraint...).

    Adapters wrap driver exceptions in this so endpoints can map any
    storage fault onto ``server_error`` without importing driver modules.
    """


def utc_now() -> int:
    return int(datetime.now(UTC).timestamp())


def generate_secret() -> str:
    return secrets.token_urlsafe(SECRET_BYTES)


def hash_secret(raw: str) -> str:
    """SHA-256 hex digest used as the storage key for codes and tokens.

    The raw value is high-entropy random data, so a fast unsalted hash is
    enough: there is nothing to brute-force.  What it buys is that a dump
    of the table (or of a Redis keyspace) cannot be replayed.
    """
    return hashlib.sha256(raw.encode()).hexdigest()
