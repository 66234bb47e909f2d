"""Canonical ID and timestamp factories for the platform.

All modules import from here instead of defining local _uuid()/_now() copies.

ID Categories
-------------
1. Internal IDs: UUID v4 strings (aggregate ids, event ids, tenant ids).
2. Content-derived IDs: SHA256[:N] deterministic hashes (idempotency keys,
   partition selection).

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone


def new_id() -> str:
    """Generate a new UUID v4 string.  Use for all internal entity IDs."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def content_hash(*parts: str, length: int = 16) -> str:
    """Generate a deterministic SHA256-based ID from content strings.

    Concatenates all *parts* with ``':'`` before hashing.

    Parameters
    ----------
    *parts:
        Strings to hash together.
    length:
        Number of hex characters to return (default 16).
    """
    raw = ":".join(parts)
    return hashlib.sha256(raw.encode()).hexdigest()[:length]


def stable_bucket(key: str, buckets: int) -> int:
    """Map *key* onto ``[0, buckets)`` identically in every process.

    The builtin ``hash()`` is salted per interpreter, so partition
    selection goes through SHA256 instead.
    """
    if buckets <= 0:
        raise ValueError("buckets must be positive")
    return int(content_hash(key, length=8), 16) % buckets
