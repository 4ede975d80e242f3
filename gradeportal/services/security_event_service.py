from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from gradeportal.models.security_event import SecurityEvent, SecurityEventType

MAX_EVENT_PAGE = 200


def log_security_event(
    db: Session,
    *,
    identity: str,
    event_type: SecurityEventType,
    created_at: datetime,
    details: dict[str, Any] | None = None,
) -> SecurityEvent:
    event = SecurityEvent(
        identity=identity,
        event_type=event_type.value,
        details=details,
        created_at=created_at,
    )
    db.add(event)
    db.flush()
    return event


def list_recent_security_events(
    db: Session,
    *,
    limit: int = 50,
    event_type: SecurityEventType | None = None,
    identity: str | None = None,
) -> list[SecurityEvent]:
    bounded_limit = max(1, min(limit, MAX_EVENT_PAGE))
    stmt = select(SecurityEvent)
    if event_type is not None:
        stmt = stmt.where(SecurityEvent.event_type == event_type.value)
    if identity is not None:
        stmt = stmt.where(SecurityEvent.identity == identity)
    return list(
        db.execute(
            stmt.order_by(SecurityEvent.created_at.desc(), SecurityEvent.id.desc()).limit(bounded_limit)
        ).scalars().all()
    )
