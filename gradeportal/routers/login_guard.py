from datetime import timedelta

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool

from gradeportal.core.api_docs import error_responses
from gradeportal.core.deps import LoginGuard, get_login_guard
from gradeportal.core.identity import MAX_IDENTITY_LENGTH, normalize_identity
from gradeportal.schemas.security import LoginAttemptIn, LoginAttemptOut, LoginGuardStatusOut
from gradeportal.services.rate_limiter import RateLimiter

router = APIRouter(prefix="/auth/login-guard", tags=["auth"])


def _status_out(rate_limiter: RateLimiter, identity: str) -> LoginGuardStatusOut:
    locked = rate_limiter.is_locked_out(identity)
    return LoginGuardStatusOut(
        identity=identity,
        locked=locked,
        remaining_attempts=0 if locked else rate_limiter.get_remaining_attempts(identity),
        lockout_minutes_remaining=rate_limiter.get_lockout_time_remaining(identity) if locked else 0,
    )


@router.get(
    "/status",
    response_model=LoginGuardStatusOut,
    summary="Check whether an identity may attempt to log in",
    responses={**error_responses(400, 422, 500, path="/auth/login-guard/status")},
)
def login_guard_status(
    identity: str = Query(min_length=1, max_length=MAX_IDENTITY_LENGTH),
    guard: LoginGuard = Depends(get_login_guard),
):
    return _status_out(guard.rate_limiter, normalize_identity(identity))


@router.post(
    "/attempts",
    response_model=LoginAttemptOut,
    summary="Report the outcome of a credential check",
    description=(
        "Records the attempt against the identity's lockout state. Failed attempts are "
        "checked for burst activity and answered only after the progressive delay."
    ),
    responses={**error_responses(400, 422, 500, path="/auth/login-guard/attempts")},
)
async def record_login_attempt(
    payload: LoginAttemptIn,
    guard: LoginGuard = Depends(get_login_guard),
):
    identity = normalize_identity(payload.identity)
    rate_limiter = guard.rate_limiter

    await run_in_threadpool(rate_limiter.record_attempt, identity, payload.success)

    delay = timedelta(0)
    if not payload.success:
        await run_in_threadpool(guard.detector.detect, identity)
        delay = await rate_limiter.apply_progressive_delay(identity)

    status_out = await run_in_threadpool(_status_out, rate_limiter, identity)
    return LoginAttemptOut(**status_out.model_dump(), delay_seconds=delay.total_seconds())
