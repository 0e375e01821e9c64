from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from vaultsync.logging import get_logger
from vaultsync.storage.models import LoginAttempt

logger = get_logger(__name__)

LOGIN_CLEANUP_INTERVAL_SECONDS = 10 * 60
LOGIN_RECORD_RETENTION = timedelta(days=30)
WINDOW_CLEANUP_INTERVAL_SECONDS = 5 * 60
WINDOW_RETENTION_COUNT = 120


class RateLimitStore(Protocol):
    def get_login_attempt(self, client_id: str) -> Optional[LoginAttempt]: ...

    def increment_login_attempt(self, client_id: str, now: datetime) -> int: ...

    def lock_login_attempt(
        self, client_id: str, locked_until: datetime, now: datetime
    ) -> None: ...

    def delete_login_attempt(self, client_id: str) -> None: ...

    def delete_stale_login_attempts(self, cutoff: datetime, now: datetime) -> int: ...

    def increment_window_counter(
        self, identifier: str, window_start: int, max_requests: int
    ) -> Optional[int]: ...

    def delete_window_counters_before(self, cutoff: int) -> int: ...


@dataclass
class LoginCheck:
    allowed: bool
    remaining_attempts: int
    retry_after_seconds: Optional[int] = None


@dataclass
class LoginFailure:
    locked: bool
    retry_after_seconds: Optional[int] = None


@dataclass
class BudgetCheck:
    allowed: bool
    remaining: int
    retry_after_seconds: Optional[int] = None


class CleanupGate:
    """Probabilistic, time-gated trigger for advisory cleanup.

    The last-run timestamp lives on the instance only; losing it just means
    cleanup may run a little sooner.
    """

    def __init__(
        self,
        interval_seconds: float,
        probability: float,
        *,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.probability = probability
        self._clock = clock
        self._rng = rng
        self.last_run_at = 0.0

    def should_run(self) -> bool:
        if self._clock() - self.last_run_at < self.interval_seconds:
            return False
        return self._rng() < self.probability

    def mark_ran(self) -> None:
        self.last_run_at = self._clock()


def normalize_client_id(client_id: Optional[str]) -> str:
    return (client_id or "").strip() or "unknown"


class RateLimitService:
    """Login lockout and fixed-window request budgets backed by the shared store."""

    def __init__(
        self,
        store: RateLimitStore,
        *,
        max_login_attempts: int = 10,
        lockout_minutes: int = 2,
        write_limit: int = 120,
        sync_read_limit: int = 1000,
        window_seconds: int = 60,
        cleanup_probability: float = 0.05,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.max_login_attempts = max_login_attempts
        self.lockout_seconds = lockout_minutes * 60
        self.write_limit = write_limit
        self.sync_read_limit = sync_read_limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._login_cleanup = CleanupGate(
            LOGIN_CLEANUP_INTERVAL_SECONDS, cleanup_probability, clock=clock, rng=rng
        )
        self._window_cleanup = CleanupGate(
            WINDOW_CLEANUP_INTERVAL_SECONDS, cleanup_probability, clock=clock, rng=rng
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # login lockout
    def check_login_attempt(self, client_id: str) -> LoginCheck:
        key = normalize_client_id(client_id)
        now = self._now()
        self._maybe_cleanup_login_attempts(now)

        record = self.store.get_login_attempt(key)
        if record is None:
            return LoginCheck(allowed=True, remaining_attempts=self.max_login_attempts)

        if record.locked_until is not None:
            if record.locked_until > now:
                retry_after = math.ceil((record.locked_until - now).total_seconds())
                return LoginCheck(
                    allowed=False, remaining_attempts=0, retry_after_seconds=retry_after
                )
            # Lock expired: forget the record so the client starts over.
            self.store.delete_login_attempt(key)
            return LoginCheck(allowed=True, remaining_attempts=self.max_login_attempts)

        remaining = max(0, self.max_login_attempts - record.attempts)
        return LoginCheck(allowed=True, remaining_attempts=remaining)

    def record_failed_login(self, client_id: str) -> LoginFailure:
        key = normalize_client_id(client_id)
        now = self._now()
        self._maybe_cleanup_login_attempts(now)

        attempts = self.store.increment_login_attempt(key, now)
        if attempts >= self.max_login_attempts:
            locked_until = now + timedelta(seconds=self.lockout_seconds)
            self.store.lock_login_attempt(key, locked_until, now)
            logger.warning("login_locked", client_id=key, attempts=attempts)
            return LoginFailure(locked=True, retry_after_seconds=self.lockout_seconds)
        logger.info("login_failed", client_id=key, attempts=attempts)
        return LoginFailure(locked=False)

    def clear_login_attempts(self, client_id: str) -> None:
        self.store.delete_login_attempt(normalize_client_id(client_id))

    # fixed-window budgets
    def consume_budget(
        self, identifier: str, max_requests: int, window_seconds: int
    ) -> BudgetCheck:
        now_sec = int(self._clock())
        window_start = now_sec - (now_sec % window_seconds)
        window_end = window_start + window_seconds
        self._maybe_cleanup_windows(window_start, window_seconds)

        count = self.store.increment_window_counter(identifier, window_start, max_requests)
        if count is None:
            logger.warning(
                "rate_limit_exceeded", identifier=identifier, limit=max_requests
            )
            return BudgetCheck(
                allowed=False, remaining=0, retry_after_seconds=window_end - now_sec
            )
        return BudgetCheck(allowed=True, remaining=max(0, max_requests - count))

    def consume_write_budget(self, identifier: str) -> BudgetCheck:
        return self.consume_budget(identifier, self.write_limit, self.window_seconds)

    def consume_sync_read_budget(self, identifier: str) -> BudgetCheck:
        return self.consume_budget(identifier, self.sync_read_limit, self.window_seconds)

    # cleanup
    def _maybe_cleanup_login_attempts(self, now: datetime) -> None:
        if not self._login_cleanup.should_run():
            return
        try:
            removed = self.store.delete_stale_login_attempts(
                now - LOGIN_RECORD_RETENTION, now
            )
        except Exception as exc:
            logger.warning("login_attempt_cleanup_failed", error=str(exc))
            return
        self._login_cleanup.mark_ran()
        logger.debug("login_attempt_cleanup", removed=removed)

    def _maybe_cleanup_windows(self, window_start: int, window_seconds: int) -> None:
        if not self._window_cleanup.should_run():
            return
        cutoff = window_start - window_seconds * WINDOW_RETENTION_COUNT
        try:
            removed = self.store.delete_window_counters_before(cutoff)
        except Exception as exc:
            logger.warning("rate_window_cleanup_failed", error=str(exc))
            return
        self._window_cleanup.mark_ran()
        logger.debug("rate_window_cleanup", removed=removed)
