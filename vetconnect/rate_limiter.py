"""Rate limiting for authentication attempts with exponential backoff.

Failures are counted per identifier (the normalised email). Five consecutive
failures lock the identifier for 30 seconds; each further failure doubles the
lockout up to 15 minutes. Entries with no activity for 15 minutes are reset.

Storage problems never block a user: a store that cannot be read or written
behaves as if no entry exists.
"""
from __future__ import annotations

import json
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class TTLMemoryStore:
    """In-memory key/value store whose entries expire after ``ttl_seconds``."""

    def __init__(
        self,
        ttl_seconds: float,
        sweep_interval_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._items: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._maybe_sweep()
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at <= self._clock():
                del self._items[key]
                return None
            return value

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._maybe_sweep()
            self._items[key] = (value, self._clock() + self.ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def sweep(self) -> int:
        """Drop every expired entry and return how many were removed."""

        with self._lock:
            return self._sweep()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _maybe_sweep(self) -> None:
        if self._clock() - self._last_sweep >= self.sweep_interval_seconds:
            self._sweep()

    def _sweep(self) -> int:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._items.items() if expires_at <= now]
        for key in expired:
            del self._items[key]
        self._last_sweep = now
        return len(expired)


@dataclass
class RateLimitEntry:
    attempts: int = 0
    last_attempt: int = 0
    locked_until: Optional[int] = None

    def to_json(self) -> str:
        return json.dumps(
            {"attempts": self.attempts, "lastAttempt": self.last_attempt, "lockedUntil": self.locked_until}
        )

    @classmethod
    def from_json(cls, raw: str) -> "RateLimitEntry":
        data = json.loads(raw)
        return cls(
            attempts=int(data["attempts"]),
            last_attempt=int(data["lastAttempt"]),
            locked_until=None if data.get("lockedUntil") is None else int(data["lockedUntil"]),
        )


@dataclass(frozen=True)
class LimitStatus:
    limited: bool
    remaining_seconds: int = 0
    message: str = ""


@dataclass(frozen=True)
class AttemptResult:
    locked: bool
    remaining_seconds: int = 0
    message: str = ""

    def as_dict(self) -> dict:
        return asdict(self)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _ceil_seconds(ms: int) -> int:
    return math.ceil(ms / 1000)


def format_wait_time(seconds: int) -> str:
    """Render a lockout as ``"N second(s)"`` or, from a minute up, ``"N minute(s)"``."""

    if seconds < 60:
        return f"{seconds} second{'' if seconds == 1 else 's'}"
    minutes = math.ceil(seconds / 60)
    return f"{minutes} minute{'' if minutes == 1 else 's'}"


class AuthRateLimiter:
    """Throttle repeated failed authentication attempts per identifier."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        clock: Callable[[], int] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.max_attempts = self.settings.rate_limit_max_attempts
        self.base_lockout_ms = self.settings.rate_limit_base_lockout_ms
        self.max_lockout_ms = self.settings.rate_limit_max_lockout_ms
        self.key_prefix = self.settings.rate_limit_key_prefix
        self.store: KeyValueStore = store or TTLMemoryStore(
            ttl_seconds=self.settings.rate_limit_store_ttl_seconds,
            sweep_interval_seconds=self.settings.rate_limit_sweep_interval_seconds,
        )
        self._clock = clock or _epoch_ms
        self._lock = threading.RLock()

    def storage_key(self, identifier: str) -> str:
        return f"{self.key_prefix}_{identifier}"

    def lockout_duration_ms(self, attempts: int) -> int:
        exponent = min(attempts - self.max_attempts, 4)
        return min(self.base_lockout_ms * 2**exponent, self.max_lockout_ms)

    def check_limit(self, identifier: str) -> LimitStatus:
        with self._lock:
            entry = self._get_entry(identifier)
            now = self._clock()

            if entry.locked_until and entry.locked_until > now:
                remaining = _ceil_seconds(entry.locked_until - now)
                return LimitStatus(
                    limited=True,
                    remaining_seconds=remaining,
                    message=f"Too many failed attempts. Please try again in {format_wait_time(remaining)}.",
                )

            if now - entry.last_attempt > self.max_lockout_ms:
                self.clear_limit(identifier)

            return LimitStatus(limited=False)

    def record_failed_attempt(self, identifier: str) -> AttemptResult:
        with self._lock:
            entry = self._get_entry(identifier)
            now = self._clock()

            entry.attempts += 1
            entry.last_attempt = now

            if entry.attempts >= self.max_attempts:
                duration = self.lockout_duration_ms(entry.attempts)
                entry.locked_until = now + duration
                self._set_entry(identifier, entry)
                remaining = _ceil_seconds(duration)
                logger.warning("Authentication locked for %s seconds after %s failures", remaining, entry.attempts)
                return AttemptResult(
                    locked=True,
                    remaining_seconds=remaining,
                    message=(
                        "Account temporarily locked due to too many failed attempts. "
                        f"Please try again in {format_wait_time(remaining)}."
                    ),
                )

            self._set_entry(identifier, entry)
            attempts_remaining = self.max_attempts - entry.attempts
            message = ""
            if attempts_remaining <= 2:
                message = (
                    f"Warning: {attempts_remaining} attempt{'' if attempts_remaining == 1 else 's'} "
                    "remaining before temporary lockout."
                )
            return AttemptResult(locked=False, message=message)

    def record_success(self, identifier: str) -> None:
        self.clear_limit(identifier)

    def clear_limit(self, identifier: str) -> None:
        try:
            self.store.delete(self.storage_key(identifier))
        except Exception:
            logger.debug("Rate limit store delete failed", exc_info=True)

    def get_remaining_attempts(self, identifier: str) -> int:
        entry = self._get_entry(identifier)
        return max(0, self.max_attempts - entry.attempts)

    # -------------------- Storage --------------------
    def _get_entry(self, identifier: str) -> RateLimitEntry:
        try:
            raw = self.store.get(self.storage_key(identifier))
            if raw:
                return RateLimitEntry.from_json(raw)
        except Exception:
            logger.debug("Rate limit store read failed", exc_info=True)
        return RateLimitEntry()

    def _set_entry(self, identifier: str, entry: RateLimitEntry) -> None:
        try:
            self.store.set(self.storage_key(identifier), entry.to_json())
        except Exception:
            logger.debug("Rate limit store write failed", exc_info=True)


auth_rate_limiter = AuthRateLimiter()
