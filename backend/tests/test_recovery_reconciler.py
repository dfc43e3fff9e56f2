"""Tests for startup reconciliation and the runtime health watch."""

import asyncio

import pytest

from domain.value_objects.process_status import ProcessStatus
from exceptions import ProcessControlError
from models import Session as SessionModel


def force_row(db_session, session_id, **fields):
    """Simulate what a previous orchestrator run left in the database"""
    db_session.query(SessionModel).filter(SessionModel.id == session_id).update(fields)
    db_session.commit()


@pytest.fixture
def make_session(registry, session_config, db_session):
    async def _make(status="idle", desired_state="stopped", **fields):
        session = await registry.create_session(session_config())
        force_row(db_session, session.id, status=status, desired_state=desired_state, **fields)
        return session.id
    return _make


class TestStartupReconciliation:
    @pytest.mark.asyncio
    async def test_running_process_is_adopted(self, reconciler, registry, supervisor, facility, make_session):
        session_id = await make_session(status="running", desired_state="running")
        facility.instances[supervisor.instance_name(session_id)] = ProcessStatus.RUNNING

        report = await reconciler.reconcile_startup()

        assert report.adopted == [session_id]
        assert facility.starts() == []
        assert supervisor.get_handle(session_id).status is ProcessStatus.RUNNING
        assert registry.get_session(session_id).process_handle == supervisor.instance_name(session_id)

    @pytest.mark.asyncio
    async def test_missing_process_is_restarted_exactly_once(self, reconciler, registry, facility, make_session):
        session_id = await make_session(status="running", desired_state="running", process_handle="stale")

        report = await reconciler.reconcile_startup()

        assert report.restarted == [session_id]
        assert report.normalized == [session_id]
        assert len(facility.starts()) == 1
        assert registry.get_session(session_id).status == "running"

    @pytest.mark.asyncio
    async def test_failed_restart_leaves_session_failed(self, reconciler, registry, facility, make_session):
        session_id = await make_session(status="idle", desired_state="running")
        facility.fail_start = True

        report = await reconciler.reconcile_startup()

        assert report.restart_failed == [session_id]
        assert len(facility.starts()) == 1
        stored = registry.get_session(session_id)
        assert stored.status == "failed"
        assert stored.last_error

    @pytest.mark.asyncio
    async def test_unwanted_process_is_stopped(self, reconciler, registry, supervisor, facility, make_session):
        session_id = await make_session(status="stopping", desired_state="stopped")
        name = supervisor.instance_name(session_id)
        facility.instances[name] = ProcessStatus.RUNNING

        report = await reconciler.reconcile_startup()

        assert report.stopped == [session_id]
        assert report.normalized == [session_id]
        assert facility.stops() == [name]
        assert registry.get_session(session_id).status == "idle"

    @pytest.mark.asyncio
    async def test_transient_state_without_process_is_normalized(self, reconciler, registry, facility, make_session):
        session_id = await make_session(status="starting", desired_state="stopped")

        report = await reconciler.reconcile_startup()

        assert report.normalized == [session_id]
        assert facility.calls == []
        assert registry.get_session(session_id).status == "idle"

    @pytest.mark.asyncio
    async def test_failed_session_stays_failed(self, reconciler, registry, supervisor, facility, make_session):
        session_id = await make_session(status="failed", desired_state="running", last_error="crashed")
        facility.instances[supervisor.instance_name(session_id)] = ProcessStatus.RUNNING

        report = await reconciler.reconcile_startup()

        assert report.stopped == [session_id]
        assert facility.starts() == []
        assert registry.get_session(session_id).status == "failed"

    @pytest.mark.asyncio
    async def test_orphan_instances_are_stopped(self, reconciler, facility, make_session):
        await make_session()
        facility.instances["stream-ghost"] = ProcessStatus.RUNNING
        facility.instances["stream-not-canonical"] = ProcessStatus.RUNNING
        facility.instances["stream-gone"] = ProcessStatus.STOPPED
        facility.instances["other-app"] = ProcessStatus.RUNNING

        report = await reconciler.reconcile_startup()

        assert sorted(report.orphans_stopped) == ["stream-ghost", "stream-not-canonical"]
        assert "other-app" in facility.instances
        assert reconciler.last_report is report

    @pytest.mark.asyncio
    async def test_enumeration_failure_falls_back_to_per_session_status(
        self, reconciler, supervisor, facility, make_session, monkeypatch
    ):
        session_id = await make_session(status="running", desired_state="running")
        facility.instances[supervisor.instance_name(session_id)] = ProcessStatus.RUNNING

        def broken_list(prefix):
            raise ProcessControlError("list", f"{prefix}-*", "dbus unavailable")
        monkeypatch.setattr(facility, "list_instances", broken_list)

        report = await reconciler.reconcile_startup()

        assert report.adopted == [session_id]
        assert any("dbus unavailable" in error for error in report.errors)

    @pytest.mark.asyncio
    async def test_report_serializes(self, reconciler):
        report = await reconciler.reconcile_startup()
        assert report.to_dict() == {
            "adopted": [], "restarted": [], "restart_failed": [], "stopped": [],
            "orphans_stopped": [], "normalized": [], "errors": [],
        }


class TestHealthWatch:
    @pytest.mark.asyncio
    async def test_watch_marks_crashed_session_failed(self, reconciler, registry, facility, session_config):
        session = await registry.create_session(session_config())
        handle, _ = await registry.request_start(session.id)
        facility.crash(handle.instance_name)

        reconciler.health_interval = 0.01
        await reconciler.start_watch()
        try:
            for _ in range(100):
                if registry.get_session(session.id).status == "failed":
                    break
                await asyncio.sleep(0.02)
        finally:
            await reconciler.stop_watch()

        assert registry.get_session(session.id).status == "failed"
        assert not reconciler.running
