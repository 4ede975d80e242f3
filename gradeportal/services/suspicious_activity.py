import logging
from datetime import timedelta

from sqlalchemy.orm import Session, sessionmaker

from gradeportal.core.clock import Clock, SystemClock
from gradeportal.core.errors import StorageUnavailable
from gradeportal.core.identity import normalize_identity
from gradeportal.core.observability import log_event
from gradeportal.models.security_event import SecurityEventType
from gradeportal.services import attempt_store
from gradeportal.services.security_event_service import log_security_event
from gradeportal.services.storage import storage_transaction

logger = logging.getLogger("gradeportal.security")


def _window_label(window: timedelta) -> str:
    seconds = int(window.total_seconds())
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


class SuspiciousActivityDetector:
    """Flags bursts of login attempts for one identity.

    Purely a monitoring signal: it writes a SUSPICIOUS_ACTIVITY event and never
    touches lockout state.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        threshold: int = 10,
        window: timedelta = timedelta(minutes=5),
        clock: Clock | None = None,
    ):
        self.threshold = threshold
        self.window = window
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def detect(self, identity: str) -> bool:
        identity = normalize_identity(identity)
        now = self._clock.now()
        try:
            with storage_transaction(self._session_factory, "detect_suspicious_activity") as db:
                count = attempt_store.count_attempts_since(db, identity, now - self.window)
                if count <= self.threshold:
                    return False
                log_security_event(
                    db,
                    identity=identity,
                    event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
                    created_at=now,
                    details={"attempt_count": count, "window": _window_label(self.window)},
                )
        except StorageUnavailable as exc:
            log_event(
                logger,
                logging.ERROR,
                "storage_read_failed",
                identity=identity,
                operation="detect_suspicious_activity",
                error=str(exc.__cause__ or exc),
            )
            return False

        log_event(
            logger,
            logging.WARNING,
            "suspicious_activity",
            identity=identity,
            attempt_count=count,
            window=_window_label(self.window),
        )
        return True
