import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from gradeportal.core.clock import Clock, SystemClock, as_utc
from gradeportal.core.identity import normalize_identity
from gradeportal.core.observability import log_event
from gradeportal.models.security_event import SecurityEventType
from gradeportal.services import attempt_store, lockout_store
from gradeportal.services.rate_limiter import RateLimiter, SecurityReport
from gradeportal.services.security_event_service import list_recent_security_events, log_security_event
from gradeportal.services.storage import storage_transaction

logger = logging.getLogger("gradeportal.security")

MAX_ATTEMPT_PAGE = 200


@dataclass(frozen=True)
class LockedAccount:
    identity: str
    attempt_count: int
    locked_until: datetime


@dataclass(frozen=True)
class SecurityEventRecord:
    id: int
    identity: str
    event_type: SecurityEventType
    details: dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class AttemptRecord:
    id: int
    identity: str
    success: bool
    attempted_at: datetime


@dataclass(frozen=True)
class CompactionResult:
    attempts_deleted: int
    states_deleted: int
    cutoff: datetime


class AdminControl:
    """Operator-facing reads and overrides. Storage faults propagate to the caller."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        rate_limiter: RateLimiter,
        *,
        clock: Clock | None = None,
        attempt_retention: timedelta = timedelta(days=30),
    ):
        self._session_factory = session_factory
        self._rate_limiter = rate_limiter
        self._clock = clock or SystemClock()
        self.attempt_retention = attempt_retention

    def list_locked_accounts(self) -> list[LockedAccount]:
        now = self._clock.now()
        with storage_transaction(self._session_factory, "list_locked_accounts") as db:
            states = lockout_store.list_locked_states(db, now)
        return [
            LockedAccount(
                identity=state.identity,
                attempt_count=state.attempt_count,
                locked_until=state.locked_until,
            )
            for state in states
        ]

    def unlock_account(self, identity: str, *, actor: str | None = None) -> bool:
        identity = normalize_identity(identity)
        now = self._clock.now()
        with self._rate_limiter.identity_lock(identity):
            with storage_transaction(self._session_factory, "unlock_account") as db:
                previous = lockout_store.delete_lockout_state(db, identity)
                if previous is None:
                    return True
                log_security_event(
                    db,
                    identity=identity,
                    event_type=SecurityEventType.ACCOUNT_UNLOCKED,
                    created_at=now,
                    details={
                        "was_locked": previous.is_locked(now),
                        "previous_attempt_count": previous.attempt_count,
                        "actor": actor,
                    },
                )

        log_event(
            logger,
            logging.INFO,
            "account_unlocked",
            identity=identity,
            was_locked=previous.is_locked(now),
            actor=actor,
        )
        return True

    def list_recent_security_events(
        self,
        limit: int = 50,
        *,
        event_type: SecurityEventType | None = None,
        identity: str | None = None,
    ) -> list[SecurityEventRecord]:
        if identity is not None:
            identity = normalize_identity(identity)
        with storage_transaction(self._session_factory, "list_recent_security_events") as db:
            rows = list_recent_security_events(db, limit=limit, event_type=event_type, identity=identity)
            return [
                SecurityEventRecord(
                    id=row.id,
                    identity=row.identity,
                    event_type=SecurityEventType(row.event_type),
                    details=row.details or {},
                    created_at=as_utc(row.created_at),
                )
                for row in rows
            ]

    def attempt_history(self, identity: str, limit: int = 50) -> list[AttemptRecord]:
        identity = normalize_identity(identity)
        bounded_limit = max(1, min(limit, MAX_ATTEMPT_PAGE))
        with storage_transaction(self._session_factory, "attempt_history") as db:
            rows = attempt_store.list_attempts(db, identity, limit=bounded_limit)
            return [
                AttemptRecord(
                    id=row.id,
                    identity=row.identity,
                    success=row.success,
                    attempted_at=as_utc(row.attempted_at),
                )
                for row in rows
            ]

    def clear_security_data(self, identity: str) -> None:
        self._rate_limiter.clear_security_data(identity)

    def security_report(self, identity: str) -> SecurityReport:
        return self._rate_limiter.get_security_report(identity)

    def compact(self, retention: timedelta | None = None) -> CompactionResult:
        now = self._clock.now()
        cutoff = now - (retention or self.attempt_retention)
        window_cutoff = now - self._rate_limiter.config.window
        with storage_transaction(self._session_factory, "compact") as db:
            attempts_deleted = attempt_store.delete_attempts_before(db, cutoff)
            states_deleted = lockout_store.delete_idle_states(db, now=now, window_cutoff=window_cutoff)

        log_event(
            logger,
            logging.INFO,
            "security_data_compacted",
            attempts_deleted=attempts_deleted,
            states_deleted=states_deleted,
            cutoff=cutoff.isoformat(),
        )
        return CompactionResult(
            attempts_deleted=attempts_deleted,
            states_deleted=states_deleted,
            cutoff=cutoff,
        )
