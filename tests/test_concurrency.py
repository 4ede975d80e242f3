import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from gradeportal.core.locks import KeyedLock
from gradeportal.db.base import Base
from gradeportal.models.login_attempt import LoginAttempt
from gradeportal.models.security_event import SecurityEvent
from gradeportal.services import lockout_store
from gradeportal.services.lockout_store import LockoutConflict, LockoutValues
from gradeportal.services.rate_limiter import LoginGuardConfig, RateLimiter

from conftest import START, read_state


def _count(session_factory, model) -> int:
    with session_factory() as db:
        return int(db.execute(select(func.count()).select_from(model)).scalar_one())


@pytest.fixture()
def file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'guard.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
    engine.dispose()


def test_concurrent_failures_are_all_counted(guard, session_factory):
    limiter = guard.rate_limiter
    barrier = threading.Barrier(4)

    def fail_once():
        barrier.wait()
        limiter.record_attempt("race@x.com", False)

    with ThreadPoolExecutor(max_workers=4) as pool:
        for future in [pool.submit(fail_once) for _ in range(4)]:
            future.result()

    assert read_state(session_factory, "race@x.com").attempt_count == 4
    assert limiter.get_remaining_attempts("race@x.com") == 1
    assert _count(session_factory, LoginAttempt) == 4


def test_concurrent_burst_locks_exactly_once(guard, session_factory):
    limiter = guard.rate_limiter
    barrier = threading.Barrier(12)

    def fail_once():
        barrier.wait()
        limiter.record_attempt("burst@x.com", False)

    with ThreadPoolExecutor(max_workers=12) as pool:
        for future in [pool.submit(fail_once) for _ in range(12)]:
            future.result()

    state = read_state(session_factory, "burst@x.com")
    assert state.attempt_count == 5
    assert state.locked_until == START + timedelta(minutes=30)
    assert _count(session_factory, SecurityEvent) == 1
    assert _count(session_factory, LoginAttempt) == 12


def test_compare_and_swap_rejects_stale_version(session_factory):
    values = LockoutValues(attempt_count=1, window_start=START, last_attempt=START, locked_until=None)
    with session_factory.begin() as db:
        lockout_store.insert_lockout_state(db, "cas@x.com", values)

    stale = read_state(session_factory, "cas@x.com")
    bumped = LockoutValues(attempt_count=2, window_start=START, last_attempt=START, locked_until=None)
    with session_factory.begin() as db:
        lockout_store.compare_and_swap(db, stale, bumped)

    with pytest.raises(LockoutConflict):
        with session_factory.begin() as db:
            lockout_store.compare_and_swap(db, stale, bumped)

    current = read_state(session_factory, "cas@x.com")
    assert current.attempt_count == 2
    assert current.version == stale.version + 1


def test_duplicate_insert_is_a_conflict(session_factory):
    values = LockoutValues(attempt_count=1, window_start=START, last_attempt=START, locked_until=None)
    with session_factory.begin() as db:
        lockout_store.insert_lockout_state(db, "dup@x.com", values)

    with pytest.raises(LockoutConflict):
        with session_factory.begin() as db:
            lockout_store.insert_lockout_state(db, "dup@x.com", values)


def test_lost_race_with_another_worker_is_retried(file_session_factory, clock, monkeypatch):
    # Two limiters with separate in-process locks stand in for two worker processes.
    ours = RateLimiter(file_session_factory, clock=clock)
    theirs = RateLimiter(file_session_factory, clock=clock)
    ours.record_attempt("shared@x.com", False)

    original_get = lockout_store.get_lockout_state
    interleaved = {"done": False}

    def get_then_interleave(db, identity):
        state = original_get(db, identity)
        if not interleaved["done"]:
            interleaved["done"] = True
            theirs.record_attempt(identity, False)
        return state

    monkeypatch.setattr(lockout_store, "get_lockout_state", get_then_interleave)
    ours.record_attempt("shared@x.com", False)
    monkeypatch.setattr(lockout_store, "get_lockout_state", original_get)

    state = read_state(file_session_factory, "shared@x.com")
    assert state.attempt_count == 3
    assert state.version == 3
    assert _count(file_session_factory, LoginAttempt) == 3


def test_exhausted_retries_are_swallowed(guard, session_factory, monkeypatch):
    limiter = guard.rate_limiter

    def always_conflict(db, identity, current, values):
        raise LockoutConflict(identity)

    monkeypatch.setattr(lockout_store, "save_lockout_state", always_conflict)
    limiter.record_attempt("stuck@x.com", False)

    assert read_state(session_factory, "stuck@x.com") is None
    assert _count(session_factory, LoginAttempt) == 0


def test_keyed_lock_isolates_keys_and_cleans_up():
    locks = KeyedLock()
    entered_b = threading.Event()

    with locks.hold("a"):
        worker = threading.Thread(target=lambda: _enter(locks, "b", entered_b))
        worker.start()
        assert entered_b.wait(timeout=2)
        worker.join(timeout=2)

    assert locks.active_keys() == 0


def _enter(locks: KeyedLock, key: str, entered: threading.Event) -> None:
    with locks.hold(key):
        entered.set()


def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    counter = {"value": 0}

    def bump():
        for _ in range(200):
            with locks.hold("same"):
                current = counter["value"]
                counter["value"] = current + 1

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter["value"] == 800
    assert locks.active_keys() == 0


def test_delay_for_one_identity_does_not_block_another(session_factory, clock):
    async def scenario():
        release = asyncio.Event()
        started = asyncio.Event()

        async def gated_sleep(seconds: float) -> None:
            started.set()
            await release.wait()

        limiter = RateLimiter(session_factory, clock=clock, sleeper=gated_sleep)
        await run_in_threadpool(limiter.record_attempt, "slow@x.com", False)

        delayed = asyncio.create_task(limiter.apply_progressive_delay("slow@x.com"))
        await asyncio.wait_for(started.wait(), timeout=2)

        await run_in_threadpool(limiter.record_attempt, "fast@x.com", False)
        fast_remaining = await run_in_threadpool(limiter.get_remaining_attempts, "fast@x.com")
        assert not delayed.done()

        release.set()
        assert await delayed == timedelta(seconds=2)
        return fast_remaining

    assert asyncio.run(scenario()) == 4


def test_cancelled_delay_leaves_state_untouched(session_factory, clock):
    limiter = RateLimiter(session_factory, clock=clock, config=LoginGuardConfig())
    for _ in range(3):
        limiter.record_attempt("cancel@x.com", False)
    before = read_state(session_factory, "cancel@x.com")

    async def scenario():
        task = asyncio.create_task(limiter.apply_progressive_delay("cancel@x.com"))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    after = read_state(session_factory, "cancel@x.com")
    assert after == before
