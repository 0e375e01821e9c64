"""Login lockout, fixed-window budgets and cleanup gating."""

import threading

import pytest

from vaultsync.service.ratelimit import (
    CleanupGate,
    RateLimitService,
    normalize_client_id,
)
from vaultsync.storage.memory import MemoryStore

START = 1_700_000_020  # 40 seconds into a 60 second window


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(store, clock):
    return RateLimitService(
        store,
        max_login_attempts=10,
        lockout_minutes=2,
        write_limit=5,
        sync_read_limit=8,
        window_seconds=60,
        cleanup_probability=0.0,
        clock=clock,
    )


class TestLoginLockout:
    """Attempt counting, lockout and lazy expiry."""

    def test_unknown_client_has_full_budget(self, limiter):
        check = limiter.check_login_attempt("1.2.3.4")
        assert check.allowed
        assert check.remaining_attempts == 10

    def test_tenth_failure_locks(self, limiter):
        for attempt in range(1, 10):
            result = limiter.record_failed_login("1.2.3.4")
            assert not result.locked, attempt
            assert limiter.check_login_attempt("1.2.3.4").remaining_attempts == 10 - attempt
        result = limiter.record_failed_login("1.2.3.4")
        assert result.locked
        assert result.retry_after_seconds == 120

        check = limiter.check_login_attempt("1.2.3.4")
        assert not check.allowed
        assert check.retry_after_seconds == 120

    def test_retry_after_counts_down(self, limiter, clock):
        for _ in range(10):
            limiter.record_failed_login("1.2.3.4")
        clock.advance(30.5)
        check = limiter.check_login_attempt("1.2.3.4")
        assert not check.allowed
        assert check.retry_after_seconds == 90

    def test_lock_expires_lazily(self, limiter, store, clock):
        for _ in range(10):
            limiter.record_failed_login("1.2.3.4")
        clock.advance(121)
        check = limiter.check_login_attempt("1.2.3.4")
        assert check.allowed
        assert check.remaining_attempts == 10
        assert store.get_login_attempt("1.2.3.4") is None

    def test_clear_resets(self, limiter, store):
        limiter.record_failed_login("1.2.3.4")
        limiter.clear_login_attempts("1.2.3.4")
        assert store.get_login_attempt("1.2.3.4") is None

    def test_clients_are_independent(self, limiter):
        for _ in range(10):
            limiter.record_failed_login("1.2.3.4")
        assert limiter.check_login_attempt("5.6.7.8").allowed

    def test_blank_client_id_is_unknown(self, limiter, store):
        limiter.record_failed_login("  ")
        assert store.get_login_attempt("unknown").attempts == 1
        assert normalize_client_id(None) == "unknown"
        assert normalize_client_id(" 9.9.9.9 ") == "9.9.9.9"


class TestFixedWindow:
    """Compare-and-increment budgets."""

    def test_allows_up_to_limit_then_denies(self, limiter):
        remaining = [limiter.consume_write_budget("u:c:write").remaining for _ in range(5)]
        assert remaining == [4, 3, 2, 1, 0]
        denied = limiter.consume_write_budget("u:c:write")
        assert not denied.allowed
        assert denied.remaining == 0
        assert denied.retry_after_seconds == 20

    def test_new_window_resets(self, limiter, clock):
        for _ in range(5):
            limiter.consume_write_budget("u:c:write")
        assert not limiter.consume_write_budget("u:c:write").allowed
        clock.advance(20)
        assert limiter.consume_write_budget("u:c:write").allowed

    def test_budgets_are_separate(self, limiter):
        for _ in range(5):
            limiter.consume_write_budget("u:c:write")
        check = limiter.consume_sync_read_budget("u:c:sync")
        assert check.allowed
        assert check.remaining == 7

    def test_denied_requests_do_not_increment(self, limiter, store):
        for _ in range(9):
            limiter.consume_write_budget("u:c:write")
        window_start = START - START % 60
        assert store.window_counters[("u:c:write", window_start)] == 5

    def test_concurrent_callers_never_exceed_limit(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        limiter = RateLimitService(
            store, write_limit=25, window_seconds=60, cleanup_probability=0.0,
            clock=lambda: START,
        )
        barrier = threading.Barrier(40)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            for _ in range(5):
                check = limiter.consume_write_budget("shared")
                with results_lock:
                    results.append(check)

        threads = [threading.Thread(target=worker) for _ in range(40)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        allowed = [r for r in results if r.allowed]
        denied = [r for r in results if not r.allowed]
        assert len(allowed) == 25
        assert len(denied) == 175
        assert all(r.retry_after_seconds > 0 for r in denied)


class TestCleanupGate:
    """Cleanup runs at most once per interval and only with probability."""

    def test_interval_and_probability(self):
        clock = FakeClock(now=10_000)
        rolls = iter([0.01, 0.9, 0.01])
        gate = CleanupGate(300, 0.05, clock=clock, rng=lambda: next(rolls))
        assert gate.should_run()
        gate.mark_ran()
        clock.advance(100)
        assert not gate.should_run()
        clock.advance(300)
        assert not gate.should_run()
        assert gate.should_run()

    def test_window_cleanup_keeps_recent_windows(self, store, clock):
        limiter = RateLimitService(
            store, window_seconds=60, cleanup_probability=1.0, clock=clock
        )
        window_start = START - START % 60
        store.window_counters[("old", window_start - 60 * 121)] = 3
        store.window_counters[("kept", window_start - 60 * 120)] = 3
        limiter.consume_write_budget("new")
        assert ("old", window_start - 60 * 121) not in store.window_counters
        assert ("kept", window_start - 60 * 120) in store.window_counters

    def test_cleanup_failure_does_not_fail_request(self, clock, tmp_path):
        class BrokenCleanupStore(MemoryStore):
            def delete_window_counters_before(self, cutoff):
                raise RuntimeError("cleanup exploded")

            def delete_stale_login_attempts(self, cutoff, now):
                raise RuntimeError("cleanup exploded")

        limiter = RateLimitService(
            BrokenCleanupStore(fs_root=str(tmp_path)),
            cleanup_probability=1.0,
            clock=clock,
        )
        assert limiter.consume_write_budget("u").allowed
        assert limiter.check_login_attempt("1.2.3.4").allowed
