import asyncio
import json
import logging
from datetime import timedelta

import pytest

from gradeportal.core.errors import StorageUnavailable
from gradeportal.services.rate_limiter import LoginGuardConfig

from conftest import build_guard


@pytest.fixture()
def security_log(caplog):
    # The service logger does not propagate, so attach the capture handler directly.
    target = logging.getLogger("gradeportal")
    target.addHandler(caplog.handler)
    caplog.set_level(logging.INFO, logger="gradeportal")
    yield caplog
    target.removeHandler(caplog.handler)


def _events(caplog) -> list[dict]:
    return [json.loads(record.getMessage()) for record in caplog.records if record.name.startswith("gradeportal")]


@pytest.fixture()
def broken_guard(broken_session_factory, clock, sleeper):
    return build_guard(broken_session_factory, clock, sleeper)


def test_reads_fail_open_by_default(broken_guard):
    limiter = broken_guard.rate_limiter

    assert limiter.is_locked_out("a@x.com") is False
    assert limiter.get_remaining_attempts("a@x.com") == 5
    assert limiter.get_lockout_time_remaining("a@x.com") == 0
    assert limiter.progressive_delay("a@x.com") == timedelta(0)


def test_reads_fail_closed_when_configured(broken_session_factory, clock, sleeper):
    config = LoginGuardConfig(fail_closed=True)
    limiter = build_guard(broken_session_factory, clock, sleeper, config=config).rate_limiter

    assert limiter.is_locked_out("a@x.com") is True
    assert limiter.get_remaining_attempts("a@x.com") == 0
    assert limiter.progressive_delay("a@x.com") == config.max_delay


def test_read_fault_is_logged(broken_guard, security_log):
    broken_guard.rate_limiter.is_locked_out("a@x.com")

    events = [e for e in _events(security_log) if e["event"] == "storage_read_failed"]
    assert len(events) == 1
    assert events[0]["operation"] == "is_locked_out"
    assert events[0]["identity"] == "a@x.com"
    assert events[0]["fail_closed"] is False


def test_write_fault_is_swallowed_and_logged(broken_guard, security_log):
    broken_guard.rate_limiter.record_attempt("a@x.com", False)
    broken_guard.rate_limiter.record_attempt("a@x.com", True)

    events = [e for e in _events(security_log) if e["event"] == "storage_write_failed"]
    assert [e["success"] for e in events] == [False, True]


def test_progressive_delay_survives_fault(broken_guard, sleeper):
    assert asyncio.run(broken_guard.rate_limiter.apply_progressive_delay("a@x.com")) == timedelta(0)
    assert sleeper.calls == []


def test_security_report_degrades(broken_guard):
    report = broken_guard.rate_limiter.get_security_report("a@x.com")

    assert report.is_locked is False
    assert report.remaining_attempts == 5
    assert report.recent_attempts == 0


def test_detector_reports_nothing_on_fault(broken_guard):
    assert broken_guard.detector.detect("a@x.com") is False


def test_clear_security_data_propagates_fault(broken_guard):
    with pytest.raises(StorageUnavailable) as excinfo:
        broken_guard.rate_limiter.clear_security_data("a@x.com")
    assert excinfo.value.operation == "clear_security_data"


@pytest.mark.parametrize(
    "call",
    [
        lambda admin: admin.list_locked_accounts(),
        lambda admin: admin.unlock_account("a@x.com"),
        lambda admin: admin.list_recent_security_events(),
        lambda admin: admin.compact(),
        lambda admin: admin.attempt_history("a@x.com"),
    ],
    ids=["list_locked_accounts", "unlock_account", "list_recent_security_events", "compact", "attempt_history"],
)
def test_admin_operations_surface_fault(broken_guard, call):
    with pytest.raises(StorageUnavailable):
        call(broken_guard.admin)
