from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gradeportal.core.clock import as_utc
from gradeportal.models.account_lockout import AccountLockout


class LockoutConflict(Exception):
    """Another writer changed the identity's lockout row between read and write."""


@dataclass(frozen=True)
class LockoutSnapshot:
    identity: str
    attempt_count: int
    window_start: datetime
    last_attempt: datetime
    locked_until: datetime | None
    version: int

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def lock_expired(self, now: datetime) -> bool:
        return self.locked_until is not None and now >= self.locked_until


@dataclass(frozen=True)
class LockoutValues:
    attempt_count: int
    window_start: datetime
    last_attempt: datetime
    locked_until: datetime | None


def _snapshot(row: AccountLockout) -> LockoutSnapshot:
    return LockoutSnapshot(
        identity=row.identity,
        attempt_count=row.attempt_count,
        window_start=as_utc(row.window_start),
        last_attempt=as_utc(row.last_attempt),
        locked_until=as_utc(row.locked_until) if row.locked_until is not None else None,
        version=row.version,
    )


def get_lockout_state(db: Session, identity: str) -> LockoutSnapshot | None:
    row = db.execute(
        select(AccountLockout).where(AccountLockout.identity == identity)
    ).scalar_one_or_none()
    if row is None:
        return None
    return _snapshot(row)


def insert_lockout_state(db: Session, identity: str, values: LockoutValues) -> None:
    try:
        db.execute(
            insert(AccountLockout).values(
                identity=identity,
                attempt_count=values.attempt_count,
                window_start=values.window_start,
                last_attempt=values.last_attempt,
                locked_until=values.locked_until,
                version=1,
            )
        )
    except IntegrityError as exc:
        raise LockoutConflict(identity) from exc


def compare_and_swap(db: Session, current: LockoutSnapshot, values: LockoutValues) -> None:
    result = db.execute(
        update(AccountLockout)
        .where(
            AccountLockout.identity == current.identity,
            AccountLockout.version == current.version,
        )
        .values(
            attempt_count=values.attempt_count,
            window_start=values.window_start,
            last_attempt=values.last_attempt,
            locked_until=values.locked_until,
            version=current.version + 1,
        )
    )
    if result.rowcount != 1:
        raise LockoutConflict(current.identity)


def save_lockout_state(
    db: Session, identity: str, current: LockoutSnapshot | None, values: LockoutValues
) -> None:
    if current is None:
        insert_lockout_state(db, identity, values)
    else:
        compare_and_swap(db, current, values)


def delete_lockout_state(db: Session, identity: str) -> LockoutSnapshot | None:
    current = get_lockout_state(db, identity)
    if current is None:
        return None
    db.execute(delete(AccountLockout).where(AccountLockout.identity == identity))
    return current


def list_locked_states(db: Session, now: datetime) -> list[LockoutSnapshot]:
    rows = db.execute(
        select(AccountLockout)
        .where(
            AccountLockout.locked_until.is_not(None),
            AccountLockout.locked_until > as_utc(now),
        )
        .order_by(AccountLockout.locked_until.desc(), AccountLockout.identity.asc())
    ).scalars().all()
    return [_snapshot(row) for row in rows]


def delete_idle_states(db: Session, *, now: datetime, window_cutoff: datetime) -> int:
    """Drop rows with nothing left to enforce: no live lock and no failures inside the window."""
    now = as_utc(now)
    result = db.execute(
        delete(AccountLockout).where(
            or_(AccountLockout.locked_until.is_(None), AccountLockout.locked_until <= now),
            or_(
                AccountLockout.attempt_count == 0,
                and_(
                    AccountLockout.window_start < as_utc(window_cutoff),
                    AccountLockout.last_attempt < as_utc(window_cutoff),
                ),
            ),
        )
    )
    return int(result.rowcount or 0)
