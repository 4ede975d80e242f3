from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache

from gradeportal.core.clock import SystemClock
from gradeportal.core.config import settings
from gradeportal.db.session import SessionLocal
from gradeportal.services.admin_control import AdminControl
from gradeportal.services.rate_limiter import LoginGuardConfig, RateLimiter
from gradeportal.services.suspicious_activity import SuspiciousActivityDetector


@dataclass(frozen=True)
class LoginGuard:
    rate_limiter: RateLimiter
    detector: SuspiciousActivityDetector
    admin: AdminControl


@lru_cache
def get_login_guard() -> LoginGuard:
    clock = SystemClock()
    rate_limiter = RateLimiter(
        SessionLocal,
        config=LoginGuardConfig.from_settings(settings),
        clock=clock,
    )
    detector = SuspiciousActivityDetector(
        SessionLocal,
        threshold=settings.suspicious_activity_threshold,
        window=timedelta(seconds=settings.suspicious_activity_window_seconds),
        clock=clock,
    )
    admin = AdminControl(
        SessionLocal,
        rate_limiter,
        clock=clock,
        attempt_retention=timedelta(days=settings.attempt_retention_days),
    )
    return LoginGuard(rate_limiter=rate_limiter, detector=detector, admin=admin)
