"""Tests for the local and systemd process-control backends."""

import json
import subprocess
import sys

import pytest

from domain.value_objects.process_status import ProcessStatus
from exceptions import ProcessControlError
from services import process_control
from services.process_control import (
    LocalProcessControl,
    SystemdProcessControl,
    create_process_control,
)


SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]
QUICK_EXIT = [sys.executable, "-c", "pass"]


@pytest.fixture
def local(tmp_path):
    control = LocalProcessControl(tmp_path / "run", stop_grace=2.0)
    yield control
    for name in list(control.list_instances("stream")):
        control.stop(name)


class TestLocalProcessControl:
    def test_start_status_stop(self, local):
        local.start("stream-a", SLEEPER)
        assert local.status("stream-a") is ProcessStatus.RUNNING
        assert local.list_instances("stream") == {"stream-a": ProcessStatus.RUNNING}

        record = json.loads((local.run_dir / "stream-a.pid").read_text())
        assert record["argv"] == SLEEPER

        assert local.stop("stream-a") is True
        assert local.status("stream-a") is ProcessStatus.STOPPED
        assert local.stop("stream-a") is False
        assert local.list_instances("stream") == {}

    def test_double_start_is_refused(self, local):
        local.start("stream-a", SLEEPER)
        with pytest.raises(ProcessControlError, match="already running"):
            local.start("stream-a", SLEEPER)

    def test_exited_process_reports_failed(self, local):
        local.start("stream-a", QUICK_EXIT)
        local._children["stream-a"].wait(timeout=10)
        assert local.status("stream-a") is ProcessStatus.FAILED
        assert local.stop("stream-a") is False
        assert local.status("stream-a") is ProcessStatus.STOPPED

    def test_missing_binary(self, local):
        with pytest.raises(ProcessControlError) as exc:
            local.start("stream-a", ["/nonexistent/ffmpeg"])
        assert exc.value.details == {"operation": "start", "instance_name": "stream-a"}

    def test_new_instance_rediscovers_running_process(self, local):
        local.start("stream-a", SLEEPER)
        restarted = LocalProcessControl(local.run_dir)
        assert restarted.status("stream-a") is ProcessStatus.RUNNING
        assert restarted.stop("stream-a") is True
        assert local.status("stream-a") is ProcessStatus.STOPPED

    def test_recycled_pid_is_not_ours(self, local):
        local.start("stream-a", SLEEPER)
        pidfile = local.run_dir / "stream-a.pid"
        record = json.loads(pidfile.read_text())
        record["create_time"] -= 3600
        pidfile.write_text(json.dumps(record))
        local._children.pop("stream-a").kill()

        assert local.status("stream-a") is ProcessStatus.FAILED


class FakeRun:
    """Stands in for subprocess.run and scripts systemctl output"""

    def __init__(self):
        self.calls = []
        self.responses = {}

    def __call__(self, args, **kwargs):
        self.calls.append(list(args))
        key = " ".join(args[:2])
        returncode, stdout, stderr = self.responses.get(key, (0, "", ""))
        if isinstance(returncode, Exception):
            raise returncode
        return subprocess.CompletedProcess(args, returncode, stdout, stderr)


@pytest.fixture
def fake_run(monkeypatch):
    runner = FakeRun()
    monkeypatch.setattr(process_control.subprocess, "run", runner)
    return runner


class TestSystemdProcessControl:
    def test_start_runs_transient_unit(self, fake_run):
        SystemdProcessControl().start("stream-a", ["ffmpeg", "-re", "-i", "x.mp4"])

        assert fake_run.calls[0] == ["systemctl", "reset-failed", "stream-a.service"]
        assert fake_run.calls[1] == [
            "systemd-run", "--unit", "stream-a.service",
            "--property", "Restart=on-failure",
            "--property", "RestartSec=5",
            "--collect", "--",
            "ffmpeg", "-re", "-i", "x.mp4",
        ]

    def test_start_failure(self, fake_run):
        fake_run.responses["systemd-run --unit"] = (1, "", "Unit stream-a.service already exists")
        with pytest.raises(ProcessControlError, match="already exists"):
            SystemdProcessControl().start("stream-a", ["ffmpeg"])

    @pytest.mark.parametrize("active_state,sub_state,expected", [
        ("active", "running", ProcessStatus.RUNNING),
        ("activating", "start", ProcessStatus.RUNNING),
        ("activating", "auto-restart", ProcessStatus.FAILED),
        ("failed", "failed", ProcessStatus.FAILED),
        ("inactive", "dead", ProcessStatus.STOPPED),
        ("unknown", "", ProcessStatus.STOPPED),
    ])
    def test_status_mapping(self, fake_run, active_state, sub_state, expected):
        fake_run.responses["systemctl show"] = (0, f"ActiveState={active_state}\nSubState={sub_state}\n", "")
        assert SystemdProcessControl().status("stream-a") is expected
        assert fake_run.calls[-1] == [
            "systemctl", "show", "--property", "ActiveState,SubState", "stream-a.service",
        ]

    def test_crash_loop_is_not_running(self, fake_run):
        fake_run.responses["systemctl show"] = (0, "ActiveState=activating\nSubState=auto-restart\n", "")
        control = SystemdProcessControl()
        assert control.status("stream-a") is ProcessStatus.FAILED
        # A crash-looping unit still gets stopped
        assert control.stop("stream-a") is True
        assert fake_run.calls[-1] == ["systemctl", "stop", "stream-a.service"]

    def test_show_failure_is_control_error(self, fake_run):
        fake_run.responses["systemctl show"] = (1, "", "Failed to connect to bus")
        with pytest.raises(ProcessControlError, match="Failed to connect to bus"):
            SystemdProcessControl().status("stream-a")

    def test_stop_skips_inactive_unit(self, fake_run):
        fake_run.responses["systemctl show"] = (0, "ActiveState=inactive\nSubState=dead\n", "")
        assert SystemdProcessControl().stop("stream-a") is False
        assert ["systemctl", "stop", "stream-a.service"] not in fake_run.calls

    def test_stop_active_unit(self, fake_run):
        fake_run.responses["systemctl show"] = (0, "ActiveState=active\nSubState=running\n", "")
        assert SystemdProcessControl().stop("stream-a") is True
        assert fake_run.calls[-1] == ["systemctl", "stop", "stream-a.service"]

    def test_timeout_becomes_control_error(self, fake_run):
        fake_run.responses["systemctl show"] = (subprocess.TimeoutExpired("systemctl", 1.0), "", "")
        with pytest.raises(ProcessControlError, match="timed out"):
            SystemdProcessControl(timeout=1.0).status("stream-a")

    def test_list_instances(self, fake_run):
        fake_run.responses["systemctl list-units"] = (0, "\n".join([
            "stream-a.service loaded active running /usr/bin/ffmpeg",
            "stream-b.service loaded failed failed /usr/bin/ffmpeg",
            "stream-c.service loaded activating auto-restart /usr/bin/ffmpeg",
            "streamer.service loaded active running other",
            "",
        ]), "")
        assert SystemdProcessControl().list_instances("stream") == {
            "stream-a": ProcessStatus.RUNNING,
            "stream-b": ProcessStatus.FAILED,
            "stream-c": ProcessStatus.FAILED,
        }


def test_factory_picks_backend(app_config):
    assert isinstance(create_process_control(app_config), LocalProcessControl)
