"""
Utility functions shared across the orchestration core.

Includes:
- Clock abstraction (wall time, monotonic time, async sleep)
- Canonical JSON and content hashing for cache keys
- Token counting via tiktoken
"""

import asyncio
import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Any

import tiktoken


class Clock:
    """Time source used by every component that waits or measures."""

    def now(self) -> float:
        """Wall-clock seconds since the epoch."""
        raise NotImplementedError

    def monotonic(self) -> float:
        """Monotonic seconds for intervals and timeouts."""
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    """Real clock backed by time and asyncio."""

    def now(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as ISO-8601, assuming UTC for naive values."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def from_iso(value: str) -> datetime:
    # Python < 3.11 does not accept a trailing Z
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if hasattr(value, "model_dump"):
        return value.model_dump(by_alias=True, mode="json")
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "value"):
        return value.value
    return str(value)


def canonical_json(value: Any) -> str:
    """
    Deterministic JSON: keys sorted recursively, compact separators.

    Two logically identical inputs with different key ordering serialize
    to the same string.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_json_default)


def sha256_hex(text: str, length: int | None = None) -> str:
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return digest[:length] if length else digest


_encoder: tiktoken.Encoding | None = None
_encoder_unavailable = False


def _get_encoder() -> tiktoken.Encoding | None:
    """Lazy-load the tiktoken encoder once; remember if it cannot be loaded."""
    global _encoder, _encoder_unavailable
    if _encoder is None and not _encoder_unavailable:
        try:
            _encoder = tiktoken.get_encoding("cl100k_base")
        except (ValueError, KeyError, OSError):
            # Encoding files unavailable (offline first run)
            _encoder_unavailable = True
    return _encoder


def count_tokens(text: str) -> int:
    """Count tokens with tiktoken, falling back to a 4-chars-per-token estimate."""
    if not text:
        return 0
    encoder = _get_encoder()
    if encoder is None:
        return (len(text) + 3) // 4
    return len(encoder.encode(text, disallowed_special=()))
