from datetime import timedelta

from fastapi import APIRouter, Depends, Query

from gradeportal.core.api_docs import error_responses
from gradeportal.core.deps import LoginGuard, get_login_guard
from gradeportal.core.identity import MAX_IDENTITY_LENGTH, normalize_identity
from gradeportal.core.permissions import require_admin_token
from gradeportal.models.security_event import SecurityEventType
from gradeportal.schemas.security import (
    AttemptHistoryItemOut,
    AttemptHistoryOut,
    CompactionIn,
    CompactionOut,
    LockedAccountListOut,
    LockedAccountOut,
    SecurityEventListOut,
    SecurityEventOut,
    SecurityReportOut,
    UnlockAccountOut,
)

router = APIRouter(
    prefix="/admin/security",
    tags=["security"],
    dependencies=[Depends(require_admin_token)],
)


@router.get(
    "/locked-accounts",
    response_model=LockedAccountListOut,
    summary="List accounts that are currently locked",
    responses={**error_responses(401, 403, 500, 503)},
)
def list_locked_accounts(guard: LoginGuard = Depends(get_login_guard)):
    accounts = guard.admin.list_locked_accounts()
    items = [
        LockedAccountOut(
            identity=account.identity,
            attempt_count=account.attempt_count,
            locked_until=account.locked_until,
        )
        for account in accounts
    ]
    return LockedAccountListOut(items=items, count=len(items))


@router.post(
    "/accounts/{identity}/unlock",
    response_model=UnlockAccountOut,
    summary="Clear an account's lockout state",
    responses={**error_responses(400, 401, 403, 500, 503)},
)
def unlock_account(identity: str, guard: LoginGuard = Depends(get_login_guard)):
    unlocked = guard.admin.unlock_account(identity, actor="admin_api")
    return UnlockAccountOut(identity=normalize_identity(identity), unlocked=unlocked)


@router.get(
    "/accounts/{identity}/report",
    response_model=SecurityReportOut,
    summary="Summarize an identity's login security state",
    responses={**error_responses(400, 401, 403, 500)},
)
def security_report(identity: str, guard: LoginGuard = Depends(get_login_guard)):
    report = guard.admin.security_report(identity)
    return SecurityReportOut(
        identity=report.identity,
        is_locked=report.is_locked,
        remaining_attempts=report.remaining_attempts,
        lockout_minutes=report.lockout_minutes,
        recent_attempts=report.recent_attempts,
    )


@router.get(
    "/accounts/{identity}/attempts",
    response_model=AttemptHistoryOut,
    summary="List an identity's recorded login attempts, newest first",
    responses={**error_responses(400, 401, 403, 422, 500, 503)},
)
def attempt_history(
    identity: str,
    limit: int = Query(default=50, ge=1, le=200),
    guard: LoginGuard = Depends(get_login_guard),
):
    attempts = guard.admin.attempt_history(identity, limit)
    items = [
        AttemptHistoryItemOut(id=attempt.id, success=attempt.success, attempted_at=attempt.attempted_at)
        for attempt in attempts
    ]
    return AttemptHistoryOut(identity=normalize_identity(identity), items=items, limit=limit, count=len(items))


@router.delete(
    "/accounts/{identity}",
    status_code=204,
    summary="Delete lockout state and attempt history for an identity",
    responses={**error_responses(400, 401, 403, 500, 503)},
)
def clear_security_data(identity: str, guard: LoginGuard = Depends(get_login_guard)):
    guard.admin.clear_security_data(identity)


@router.get(
    "/events",
    response_model=SecurityEventListOut,
    summary="List recent security events",
    responses={**error_responses(400, 401, 403, 422, 500, 503)},
)
def list_security_events(
    limit: int = Query(default=50, ge=1, le=200),
    event_type: SecurityEventType | None = Query(default=None),
    identity: str | None = Query(default=None, max_length=MAX_IDENTITY_LENGTH),
    guard: LoginGuard = Depends(get_login_guard),
):
    events = guard.admin.list_recent_security_events(limit, event_type=event_type, identity=identity)
    items = [
        SecurityEventOut(
            id=event.id,
            identity=event.identity,
            event_type=event.event_type,
            details=event.details,
            created_at=event.created_at,
        )
        for event in events
    ]
    return SecurityEventListOut(items=items, limit=limit, count=len(items))


@router.post(
    "/maintenance/compact",
    response_model=CompactionOut,
    summary="Purge old login attempts and idle lockout rows",
    responses={**error_responses(401, 403, 422, 500, 503)},
)
def compact_security_data(
    payload: CompactionIn | None = None,
    guard: LoginGuard = Depends(get_login_guard),
):
    retention_days = payload.retention_days if payload else None
    retention = timedelta(days=retention_days) if retention_days else None
    result = guard.admin.compact(retention)
    return CompactionOut(
        attempts_deleted=result.attempts_deleted,
        states_deleted=result.states_deleted,
        cutoff=result.cutoff,
    )
