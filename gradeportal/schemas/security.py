from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from gradeportal.core.identity import MAX_IDENTITY_LENGTH
from gradeportal.models.security_event import SecurityEventType


class LoginAttemptIn(BaseModel):
    identity: str = Field(min_length=1, max_length=MAX_IDENTITY_LENGTH)
    success: bool

    model_config = ConfigDict(
        json_schema_extra={"example": {"identity": "student@school.edu", "success": False}}
    )


class LoginGuardStatusOut(BaseModel):
    identity: str
    locked: bool
    remaining_attempts: int
    lockout_minutes_remaining: int

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "identity": "student@school.edu",
                "locked": False,
                "remaining_attempts": 3,
                "lockout_minutes_remaining": 0,
            }
        }
    )


class LoginAttemptOut(LoginGuardStatusOut):
    delay_seconds: float = 0.0


class LockedAccountOut(BaseModel):
    identity: str
    attempt_count: int
    locked_until: datetime


class LockedAccountListOut(BaseModel):
    items: list[LockedAccountOut]
    count: int


class UnlockAccountOut(BaseModel):
    identity: str
    unlocked: bool


class SecurityEventOut(BaseModel):
    id: int
    identity: str
    event_type: SecurityEventType
    details: dict[str, Any]
    created_at: datetime


class SecurityEventListOut(BaseModel):
    items: list[SecurityEventOut]
    limit: int
    count: int


class AttemptHistoryItemOut(BaseModel):
    id: int
    success: bool
    attempted_at: datetime


class AttemptHistoryOut(BaseModel):
    identity: str
    items: list[AttemptHistoryItemOut]
    limit: int
    count: int


class SecurityReportOut(BaseModel):
    identity: str
    is_locked: bool
    remaining_attempts: int
    lockout_minutes: int
    recent_attempts: int


class CompactionIn(BaseModel):
    retention_days: int | None = Field(default=None, ge=1, le=3650)


class CompactionOut(BaseModel):
    attempts_deleted: int
    states_deleted: int
    cutoff: datetime
