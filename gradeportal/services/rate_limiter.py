import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session, sessionmaker

from gradeportal.core.clock import Clock, SystemClock, ensure_forward
from gradeportal.core.config import Settings
from gradeportal.core.errors import ClockSkew, StorageUnavailable
from gradeportal.core.identity import normalize_identity
from gradeportal.core.locks import KeyedLock
from gradeportal.core.observability import log_event
from gradeportal.models.security_event import SecurityEventType
from gradeportal.services import attempt_store, lockout_store
from gradeportal.services.lockout_store import LockoutConflict, LockoutSnapshot, LockoutValues
from gradeportal.services.security_event_service import log_security_event
from gradeportal.services.storage import storage_transaction

logger = logging.getLogger("gradeportal.security")

Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class LoginGuardConfig:
    max_attempts: int = 5
    window: timedelta = timedelta(minutes=15)
    lockout_duration: timedelta = timedelta(minutes=30)
    base_delay: timedelta = timedelta(seconds=2)
    max_delay: timedelta = timedelta(seconds=10)
    fail_closed: bool = False
    max_write_retries: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "LoginGuardConfig":
        return cls(
            max_attempts=settings.login_guard_max_attempts,
            window=timedelta(seconds=settings.login_guard_window_seconds),
            lockout_duration=timedelta(seconds=settings.login_guard_lockout_seconds),
            base_delay=timedelta(seconds=settings.login_guard_base_delay_seconds),
            max_delay=timedelta(seconds=settings.login_guard_max_delay_seconds),
            fail_closed=settings.login_guard_fail_closed,
        )


@dataclass(frozen=True)
class FailureTransition:
    values: LockoutValues
    locked_now: bool


@dataclass(frozen=True)
class SecurityReport:
    identity: str
    is_locked: bool
    remaining_attempts: int
    lockout_minutes: int
    recent_attempts: int


def next_failure_state(
    current: LockoutSnapshot | None, now: datetime, config: LoginGuardConfig
) -> FailureTransition:
    """Compute the lockout row that results from one more failed attempt at `now`."""
    if current is None:
        count, window_start, locked_until = 0, now, None
    else:
        count, window_start, locked_until = (
            current.attempt_count,
            current.window_start,
            current.locked_until,
        )
        if current.lock_expired(now):
            count, window_start, locked_until = 0, now, None

    if locked_until is not None:
        # Active lock: the count stays frozen and the expiry is never pushed out.
        return FailureTransition(
            values=LockoutValues(
                attempt_count=count,
                window_start=window_start,
                last_attempt=now,
                locked_until=locked_until,
            ),
            locked_now=False,
        )

    if now - window_start > config.window:
        count, window_start = 0, now

    count += 1
    locked_now = count >= config.max_attempts
    if locked_now:
        locked_until = now + config.lockout_duration

    return FailureTransition(
        values=LockoutValues(
            attempt_count=count,
            window_start=window_start,
            last_attempt=now,
            locked_until=locked_until,
        ),
        locked_now=locked_now,
    )


class RateLimiter:
    """Per-identity failed-login accounting with sliding-window lockout.

    Every read-modify-write of an identity's lockout row runs under that
    identity's in-process mutex and is committed as a compare-and-swap on the
    row version, so concurrent workers never lose an increment. Storage faults
    on reads follow the configured fail policy; faults on writes are logged
    and swallowed so the login flow keeps moving.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        config: LoginGuardConfig | None = None,
        clock: Clock | None = None,
        sleeper: Sleeper | None = None,
        locks: KeyedLock | None = None,
    ):
        self.config = config or LoginGuardConfig()
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._sleep = sleeper or asyncio.sleep
        self._locks = locks or KeyedLock()

    @contextmanager
    def identity_lock(self, identity: str) -> Iterator[None]:
        with self._locks.hold(identity):
            yield

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_locked_out(self, identity: str) -> bool:
        identity = normalize_identity(identity)
        with self._locks.hold(identity):
            try:
                state = self._read_state(identity, "is_locked_out")
            except StorageUnavailable as exc:
                self._log_read_fault("is_locked_out", identity, exc)
                return self.config.fail_closed

            if state is None or state.locked_until is None:
                return False

            now = self._clock.now()
            if state.is_locked(now):
                return True

            self._expire_lock(state, now)
            return False

    def get_remaining_attempts(self, identity: str) -> int:
        identity = normalize_identity(identity)
        try:
            state = self._read_state(identity, "get_remaining_attempts")
        except StorageUnavailable as exc:
            self._log_read_fault("get_remaining_attempts", identity, exc)
            return 0 if self.config.fail_closed else self.config.max_attempts

        return self._remaining_attempts(state, self._clock.now())

    def get_lockout_time_remaining(self, identity: str) -> int:
        """Minutes until the lock lifts, rounded up. Zero when not locked."""
        identity = normalize_identity(identity)
        try:
            state = self._read_state(identity, "get_lockout_time_remaining")
        except StorageUnavailable as exc:
            self._log_read_fault("get_lockout_time_remaining", identity, exc)
            return 0

        return self._lockout_minutes(state, self._clock.now())

    def progressive_delay(self, identity: str) -> timedelta:
        identity = normalize_identity(identity)
        try:
            state = self._read_state(identity, "progressive_delay")
        except StorageUnavailable as exc:
            self._log_read_fault("progressive_delay", identity, exc)
            return self.config.max_delay if self.config.fail_closed else timedelta(0)

        if state is None or state.attempt_count <= 0:
            return timedelta(0)
        return min(self.config.base_delay * state.attempt_count, self.config.max_delay)

    async def apply_progressive_delay(self, identity: str) -> timedelta:
        """Suspend the calling task for the identity's current delay.

        The state read happens off the event loop and no lock is held while
        sleeping, so cancelling the caller is always safe.
        """
        delay = await run_in_threadpool(self.progressive_delay, identity)
        if delay > timedelta(0):
            await self._sleep(delay.total_seconds())
        return delay

    def get_security_report(self, identity: str) -> SecurityReport:
        identity = normalize_identity(identity)
        is_locked = self.is_locked_out(identity)
        now = self._clock.now()
        try:
            with storage_transaction(self._session_factory, "get_security_report") as db:
                state = lockout_store.get_lockout_state(db, identity)
                recent = attempt_store.count_attempts_since(db, identity, now - self.config.window)
        except StorageUnavailable as exc:
            self._log_read_fault("get_security_report", identity, exc)
            return SecurityReport(
                identity=identity,
                is_locked=is_locked,
                remaining_attempts=0 if self.config.fail_closed else self.config.max_attempts,
                lockout_minutes=0,
                recent_attempts=0,
            )

        return SecurityReport(
            identity=identity,
            is_locked=is_locked,
            remaining_attempts=self._remaining_attempts(state, now),
            lockout_minutes=self._lockout_minutes(state, now),
            recent_attempts=recent,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_attempt(self, identity: str, success: bool) -> None:
        identity = normalize_identity(identity)
        with self._locks.hold(identity):
            try:
                if success:
                    self._record_success(identity)
                else:
                    self._record_failure(identity)
            except StorageUnavailable as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "storage_write_failed",
                    identity=identity,
                    operation="record_attempt",
                    success=success,
                    error=str(exc.__cause__ or exc),
                )

    def clear_security_data(self, identity: str) -> None:
        identity = normalize_identity(identity)
        with self._locks.hold(identity):
            with storage_transaction(self._session_factory, "clear_security_data") as db:
                lockout_store.delete_lockout_state(db, identity)
                deleted = attempt_store.delete_attempts(db, identity)
        log_event(logger, logging.INFO, "security_data_cleared", identity=identity, attempts_deleted=deleted)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _read_state(self, identity: str, operation: str) -> LockoutSnapshot | None:
        with storage_transaction(self._session_factory, operation) as db:
            return lockout_store.get_lockout_state(db, identity)

    def _remaining_attempts(self, state: LockoutSnapshot | None, now: datetime) -> int:
        # An elapsed window reports a full budget even while a lock is still running;
        # callers consult is_locked_out first.
        if state is None or state.lock_expired(now) or now - state.window_start > self.config.window:
            return self.config.max_attempts
        return max(self.config.max_attempts - state.attempt_count, 0)

    @staticmethod
    def _lockout_minutes(state: LockoutSnapshot | None, now: datetime) -> int:
        if state is None or not state.is_locked(now):
            return 0
        remaining = (state.locked_until - now).total_seconds()
        return math.ceil(remaining / 60)

    def _resolve_now(self, identity: str, state: LockoutSnapshot | None) -> datetime:
        now = self._clock.now()
        if state is None:
            return now
        try:
            return ensure_forward(now, state.last_attempt)
        except ClockSkew as exc:
            log_event(
                logger,
                logging.WARNING,
                "clock_skew",
                identity=identity,
                observed=exc.observed.isoformat(),
                last_attempt=exc.last_recorded.isoformat(),
            )
            return state.last_attempt

    def _record_success(self, identity: str) -> None:
        with storage_transaction(self._session_factory, "record_attempt") as db:
            state = lockout_store.get_lockout_state(db, identity)
            now = self._resolve_now(identity, state)
            attempt_store.append_attempt(db, identity=identity, success=True, attempted_at=now)
            lockout_store.delete_lockout_state(db, identity)

        if state is not None and state.is_locked(now):
            log_event(logger, logging.INFO, "lock_cleared_by_success", identity=identity)

    def _record_failure(self, identity: str) -> None:
        for attempt in range(1, self.config.max_write_retries + 1):
            try:
                with storage_transaction(self._session_factory, "record_attempt") as db:
                    state = lockout_store.get_lockout_state(db, identity)
                    now = self._resolve_now(identity, state)
                    attempt_store.append_attempt(db, identity=identity, success=False, attempted_at=now)
                    transition = next_failure_state(state, now, self.config)
                    lockout_store.save_lockout_state(db, identity, state, transition.values)
                    if transition.locked_now:
                        log_security_event(
                            db,
                            identity=identity,
                            event_type=SecurityEventType.ACCOUNT_LOCKED,
                            created_at=now,
                            details={
                                "attempt_count": transition.values.attempt_count,
                                "locked_until": transition.values.locked_until.isoformat(),
                            },
                        )
            except LockoutConflict:
                log_event(logger, logging.INFO, "lockout_write_conflict", identity=identity, attempt=attempt)
                continue

            if transition.locked_now:
                log_event(
                    logger,
                    logging.WARNING,
                    "account_locked",
                    identity=identity,
                    attempt_count=transition.values.attempt_count,
                    locked_until=transition.values.locked_until.isoformat(),
                )
            return

        raise StorageUnavailable(
            "record_attempt",
            f"Lockout state for {identity} kept changing after {self.config.max_write_retries} attempts",
        )

    def _expire_lock(self, state: LockoutSnapshot, now: datetime) -> None:
        cleared = LockoutValues(
            attempt_count=0,
            window_start=state.window_start,
            last_attempt=state.last_attempt,
            locked_until=None,
        )
        try:
            with storage_transaction(self._session_factory, "is_locked_out") as db:
                lockout_store.compare_and_swap(db, state, cleared)
        except LockoutConflict:
            # Someone else already moved the row on; expiry is monotonic so nothing is lost.
            return
        except StorageUnavailable as exc:
            log_event(
                logger,
                logging.ERROR,
                "storage_write_failed",
                identity=state.identity,
                operation="is_locked_out",
                error=str(exc.__cause__ or exc),
            )
            return
        log_event(logger, logging.INFO, "lock_expired", identity=state.identity)

    def _log_read_fault(self, operation: str, identity: str, exc: StorageUnavailable) -> None:
        log_event(
            logger,
            logging.ERROR,
            "storage_read_failed",
            identity=identity,
            operation=operation,
            fail_closed=self.config.fail_closed,
            error=str(exc.__cause__ or exc),
        )
