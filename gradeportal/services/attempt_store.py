from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from gradeportal.core.clock import as_utc
from gradeportal.models.login_attempt import LoginAttempt


def append_attempt(db: Session, *, identity: str, success: bool, attempted_at: datetime) -> LoginAttempt:
    attempt = LoginAttempt(identity=identity, success=success, attempted_at=attempted_at)
    db.add(attempt)
    db.flush()
    return attempt


def count_attempts_since(db: Session, identity: str, since: datetime) -> int:
    return int(
        db.execute(
            select(func.count(LoginAttempt.id)).where(
                LoginAttempt.identity == identity,
                LoginAttempt.attempted_at > as_utc(since),
            )
        ).scalar_one()
    )


def list_attempts(db: Session, identity: str, *, limit: int = 50) -> list[LoginAttempt]:
    """Newest first; the id breaks ties between attempts recorded in the same instant."""
    return list(
        db.execute(
            select(LoginAttempt)
            .where(LoginAttempt.identity == identity)
            .order_by(LoginAttempt.attempted_at.desc(), LoginAttempt.id.desc())
            .limit(limit)
        ).scalars().all()
    )


def delete_attempts(db: Session, identity: str) -> int:
    result = db.execute(delete(LoginAttempt).where(LoginAttempt.identity == identity))
    return int(result.rowcount or 0)


def delete_attempts_before(db: Session, cutoff: datetime) -> int:
    result = db.execute(delete(LoginAttempt).where(LoginAttempt.attempted_at < as_utc(cutoff)))
    return int(result.rowcount or 0)
