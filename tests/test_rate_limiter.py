"""Behaviour of the authentication rate limiter under a controlled clock."""
from __future__ import annotations

import json
import threading

import pytest

from vetconnect.rate_limiter import AttemptResult, AuthRateLimiter, TTLMemoryStore, format_wait_time

IDENTIFIER = "user@example.test"


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FailingStore:
    def get(self, key):
        raise OSError("storage unavailable")

    def set(self, key, value):
        raise OSError("quota exceeded")

    def delete(self, key):
        raise OSError("storage unavailable")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> TTLMemoryStore:
    return TTLMemoryStore(ttl_seconds=3600)


@pytest.fixture()
def limiter(store, clock) -> AuthRateLimiter:
    return AuthRateLimiter(store=store, clock=clock)


def _fail(limiter: AuthRateLimiter, times: int) -> AttemptResult:
    result = None
    for _ in range(times):
        result = limiter.record_failed_attempt(IDENTIFIER)
    return result


def test_not_limited_below_threshold(limiter) -> None:
    for expected_remaining in (4, 3, 2, 1):
        result = limiter.record_failed_attempt(IDENTIFIER)
        assert result.locked is False
        assert result.remaining_seconds == 0
        assert limiter.check_limit(IDENTIFIER).limited is False
        assert limiter.get_remaining_attempts(IDENTIFIER) == expected_remaining


def test_warning_only_when_one_or_two_attempts_remain(limiter) -> None:
    messages = [limiter.record_failed_attempt(IDENTIFIER).message for _ in range(4)]
    assert messages[0] == ""
    assert messages[1] == ""
    assert messages[2] == "Warning: 2 attempts remaining before temporary lockout."
    assert messages[3] == "Warning: 1 attempt remaining before temporary lockout."


def test_fifth_failure_locks_for_thirty_seconds(limiter) -> None:
    _fail(limiter, 4)
    result = limiter.record_failed_attempt(IDENTIFIER)

    assert result.locked is True
    assert 0 < result.remaining_seconds <= 30
    assert "30 second" in result.message
    assert result.message == (
        "Account temporarily locked due to too many failed attempts. Please try again in 30 seconds."
    )

    status = limiter.check_limit(IDENTIFIER)
    assert status.limited is True
    assert status.remaining_seconds == 30
    assert status.message == "Too many failed attempts. Please try again in 30 seconds."


def test_remaining_seconds_recomputed_from_clock(limiter, clock) -> None:
    _fail(limiter, 5)
    clock.advance(10_500)
    status = limiter.check_limit(IDENTIFIER)
    assert status.limited is True
    assert status.remaining_seconds == 20


def test_lockout_escalates_to_cap(limiter, clock) -> None:
    expected = [30, 60, 120, 240, 900, 900]
    observed = []
    _fail(limiter, 4)
    for _ in expected:
        result = limiter.record_failed_attempt(IDENTIFIER)
        assert result.locked is True
        observed.append(result.remaining_seconds)
        clock.advance(result.remaining_seconds * 1000 + 1)
    assert observed == expected


@pytest.mark.parametrize(
    "attempts, wait",
    [(5, "30 seconds"), (6, "1 minute"), (7, "2 minutes"), (8, "4 minutes"), (9, "15 minutes")],
)
def test_lockout_messages_use_minutes_from_sixty_seconds(limiter, attempts, wait) -> None:
    result = _fail(limiter, attempts)
    assert result.message.endswith(f"Please try again in {wait}.")


def test_attempts_persist_after_lockout_expires(limiter, clock) -> None:
    _fail(limiter, 5)
    clock.advance(30_001)

    assert limiter.check_limit(IDENTIFIER).limited is False
    assert limiter.get_remaining_attempts(IDENTIFIER) == 0

    # the next failure continues the ladder instead of starting over
    result = limiter.record_failed_attempt(IDENTIFIER)
    assert result.locked is True
    assert result.remaining_seconds == 60


def test_success_resets_everything(limiter) -> None:
    _fail(limiter, 5)
    limiter.record_success(IDENTIFIER)

    assert limiter.check_limit(IDENTIFIER).limited is False
    assert limiter.get_remaining_attempts(IDENTIFIER) == 5


def test_clear_limit_removes_entry(limiter, store) -> None:
    _fail(limiter, 3)
    limiter.clear_limit(IDENTIFIER)
    assert store.get(limiter.storage_key(IDENTIFIER)) is None
    assert limiter.get_remaining_attempts(IDENTIFIER) == 5


def test_stale_entry_is_reset_on_check(limiter, clock, store) -> None:
    _fail(limiter, 3)
    clock.advance(900_001)

    assert limiter.check_limit(IDENTIFIER).limited is False
    assert store.get(limiter.storage_key(IDENTIFIER)) is None
    assert limiter.get_remaining_attempts(IDENTIFIER) == 5


def test_entry_at_exactly_fifteen_minutes_is_kept(limiter, clock) -> None:
    _fail(limiter, 3)
    clock.advance(900_000)
    limiter.check_limit(IDENTIFIER)
    assert limiter.get_remaining_attempts(IDENTIFIER) == 2


def test_stale_after_long_lockout_expires(limiter, clock) -> None:
    _fail(limiter, 9)
    clock.advance(900_001)
    assert limiter.check_limit(IDENTIFIER).limited is False
    assert limiter.get_remaining_attempts(IDENTIFIER) == 5


def test_remaining_attempts_never_negative(limiter) -> None:
    _fail(limiter, 12)
    assert limiter.get_remaining_attempts(IDENTIFIER) == 0


def test_identifiers_are_tracked_independently(limiter) -> None:
    _fail(limiter, 5)
    assert limiter.check_limit("other@example.test").limited is False
    assert limiter.get_remaining_attempts("other@example.test") == 5


def test_persisted_layout(limiter, store, clock) -> None:
    _fail(limiter, 5)
    raw = store.get("auth_rate_limit_" + IDENTIFIER)
    assert raw is not None
    data = json.loads(raw)
    assert data == {"attempts": 5, "lastAttempt": clock.now, "lockedUntil": clock.now + 30_000}


def test_unlocked_entry_has_null_locked_until(limiter, store) -> None:
    _fail(limiter, 1)
    data = json.loads(store.get(limiter.storage_key(IDENTIFIER)))
    assert data["lockedUntil"] is None


def test_corrupt_entry_is_treated_as_absent(limiter, store) -> None:
    store.set(limiter.storage_key(IDENTIFIER), "{not json")
    assert limiter.check_limit(IDENTIFIER).limited is False
    result = limiter.record_failed_attempt(IDENTIFIER)
    assert result.locked is False
    assert limiter.get_remaining_attempts(IDENTIFIER) == 4


def test_failing_store_never_raises(clock) -> None:
    limiter = AuthRateLimiter(store=FailingStore(), clock=clock)

    for _ in range(6):
        result = limiter.record_failed_attempt(IDENTIFIER)
        assert isinstance(result, AttemptResult)
        assert result.locked is False

    assert limiter.check_limit(IDENTIFIER).limited is False
    assert limiter.get_remaining_attempts(IDENTIFIER) == 5
    limiter.record_success(IDENTIFIER)
    limiter.clear_limit(IDENTIFIER)


def test_concurrent_failures_are_all_counted(limiter) -> None:
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        limiter.record_failed_attempt(IDENTIFIER)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    data = json.loads(limiter.store.get(limiter.storage_key(IDENTIFIER)))
    assert data["attempts"] == 8


@pytest.mark.parametrize(
    "seconds, text",
    [
        (1, "1 second"),
        (30, "30 seconds"),
        (59, "59 seconds"),
        (60, "1 minute"),
        (61, "2 minutes"),
        (240, "4 minutes"),
        (900, "15 minutes"),
    ],
)
def test_format_wait_time(seconds, text) -> None:
    assert format_wait_time(seconds) == text


def test_ttl_store_expires_and_sweeps() -> None:
    now = [0.0]
    store = TTLMemoryStore(ttl_seconds=10, sweep_interval_seconds=100, clock=lambda: now[0])
    store.set("a", "1")
    store.set("b", "2")
    assert store.get("a") == "1"

    now[0] = 11
    assert store.get("a") is None
    assert len(store) == 1

    assert store.sweep() == 1
    assert len(store) == 0


def test_ttl_store_sweeps_on_access() -> None:
    now = [0.0]
    store = TTLMemoryStore(ttl_seconds=1, sweep_interval_seconds=5, clock=lambda: now[0])
    store.set("stale", "x")
    now[0] = 6
    store.set("fresh", "y")
    assert len(store) == 1
    assert store.get("fresh") == "y"


def test_ttl_store_length_waits_for_lock() -> None:
    store = TTLMemoryStore(ttl_seconds=60)
    store.set("a", "1")
    sizes = []

    store._lock.acquire()
    try:
        reader = threading.Thread(target=lambda: sizes.append(len(store)))
        reader.start()
        reader.join(timeout=0.1)
        assert reader.is_alive()
        assert sizes == []
    finally:
        store._lock.release()
    reader.join(timeout=1)
    assert sizes == [1]
