"""Tests for the worker pool, persistence retry, settings and logging helpers."""

import asyncio
import logging
import threading
import time

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from constants import SettingKeys
from exceptions import PersistenceError, ProcessControlError
from init_db import DEFAULT_SETTINGS, init_database, read_setting
from models import Setting
from services.worker_pool import WorkerPool
from utils.logging_utils import ContextFormatter, StructuredLogger, clear_logging_context, set_logging_context
from utils.retry import commit_with_retry


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_runs_blocking_call(self):
        pool = WorkerPool(max_workers=2)
        try:
            assert await pool.run(lambda a, b: a + b, 2, 3) == 5
            assert pool.running
            assert pool.in_flight == 0
        finally:
            pool.stop()
        assert not pool.running

    @pytest.mark.asyncio
    async def test_overrun_becomes_control_error(self):
        pool = WorkerPool(max_workers=1)
        release = threading.Event()
        try:
            with pytest.raises(ProcessControlError) as exc:
                await pool.run(release.wait, 5, timeout=0.05, operation="status", target="stream-a")
            assert exc.value.details == {"operation": "status", "instance_name": "stream-a"}
            assert pool.in_flight == 0
        finally:
            release.set()
            pool.stop()

    @pytest.mark.asyncio
    async def test_settle_waits_for_overrun_call(self):
        pool = WorkerPool(max_workers=1)
        finished = []

        def slow():
            time.sleep(0.2)
            finished.append(True)

        try:
            with pytest.raises(ProcessControlError):
                await pool.run(slow, timeout=0.05, operation="start", target="stream-a")
            assert finished == []

            assert await pool.settle("stream-a", timeout=2.0) is True
            assert finished == [True]
            assert await pool.settle("stream-a", timeout=0.01) is True
        finally:
            pool.stop()

    @pytest.mark.asyncio
    async def test_settle_gives_up_after_timeout(self):
        pool = WorkerPool(max_workers=1)
        release = threading.Event()
        try:
            with pytest.raises(ProcessControlError):
                await pool.run(release.wait, 5, timeout=0.05, operation="start", target="stream-a")
            assert await pool.settle("stream-a", timeout=0.05) is False
            release.set()
            assert await pool.settle("stream-a", timeout=2.0) is True
        finally:
            release.set()
            pool.stop()

    @pytest.mark.asyncio
    async def test_calls_do_not_block_the_loop(self):
        pool = WorkerPool(max_workers=2)
        ticks = []

        async def ticker():
            for _ in range(3):
                ticks.append(time.monotonic())
                await asyncio.sleep(0.01)

        try:
            await asyncio.gather(pool.run(time.sleep, 0.1), ticker())
        finally:
            pool.stop()
        assert len(ticks) == 3


class TestCommitWithRetry:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, db_session):
        attempts = []

        def mutate():
            attempts.append(1)
            if len(attempts) < 3:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            db_session.add(Setting(key="k", value="v"))
            return "ok"

        result = await commit_with_retry(db_session, "save setting", mutate, attempts=5, initial_backoff=0.001)

        assert result == "ok"
        assert len(attempts) == 3
        assert db_session.query(Setting).filter(Setting.key == "k").one().value == "v"

    @pytest.mark.asyncio
    async def test_gives_up_with_persistence_error(self, db_session):
        def mutate():
            raise OperationalError("UPDATE", {}, Exception("disk I/O error"))

        with pytest.raises(PersistenceError) as exc:
            await commit_with_retry(db_session, "save setting", mutate, attempts=2, initial_backoff=0.001)
        assert exc.value.details == {"operation": "save setting"}

    @pytest.mark.asyncio
    async def test_integrity_errors_are_not_retried(self, db_session):
        attempts = []

        def mutate():
            attempts.append(1)
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(PersistenceError):
            await commit_with_retry(db_session, "insert", mutate, attempts=5, initial_backoff=0.001)
        assert len(attempts) == 1


class TestSettings:
    def test_init_database_seeds_defaults(self, engine, session_factory, db_session):
        init_database(engine=engine, session_factory=session_factory)
        init_database(engine=engine, session_factory=session_factory)

        stored = {s.key: s.value for s in db_session.query(Setting).all()}
        assert stored == DEFAULT_SETTINGS

    def test_read_setting_casts_and_falls_back(self, db_session):
        assert read_setting(db_session, SettingKeys.DISPATCH_CONCURRENCY, 4, int) == 4

        db_session.add(Setting(key=SettingKeys.DISPATCH_CONCURRENCY, value="8"))
        db_session.add(Setting(key=SettingKeys.HEALTH_CHECK_INTERVAL, value="soon"))
        db_session.commit()

        assert read_setting(db_session, SettingKeys.DISPATCH_CONCURRENCY, 4, int) == 8
        assert read_setting(db_session, SettingKeys.HEALTH_CHECK_INTERVAL, 5.0) == 5.0



class TestLoggingContext:
    def test_formatter_appends_context_fields(self):
        formatter = ContextFormatter("%(message)s")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "fired", None, None)
        record.session_id = "s1"
        record.schedule_id = "sch1"
        assert formatter.format(record) == "fired [session_id=s1 schedule_id=sch1]"

        plain = logging.LogRecord("x", logging.INFO, __file__, 1, "idle", None, None)
        assert formatter.format(plain) == "idle"

    def test_structured_logger_carries_task_context(self, caplog):
        log = StructuredLogger("tests.fire")
        set_logging_context(schedule_id="sch1")
        try:
            with caplog.at_level(logging.INFO, logger="tests.fire"):
                log.info("dispatching", extra={"session_id": "s1"})
        finally:
            clear_logging_context()

        record = caplog.records[-1]
        assert record.schedule_id == "sch1"
        assert record.session_id == "s1"
