import os
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Dict, List, Tuple

# Add backend directory to Python path FIRST
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Keep module-level config (database.py, main.py) away from the real data dir
os.environ.setdefault("STREAM_DATA_DIR", tempfile.mkdtemp(prefix="stream-orchestrator-tests-"))
os.environ.setdefault("PROCESS_BACKEND", "local")

# Now import after path is set
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config.app_config import AppConfig
from database import Base
from domain.value_objects.process_status import ProcessStatus
from exceptions import ProcessControlError
from schemas import SessionCreate
from services.process_control import ProcessControl
from services.orchestrator import Orchestrator
import models  # noqa: F401  (registers tables on Base)


class FakeProcessControl(ProcessControl):
    """In-memory process facility that records every call"""

    def __init__(self):
        self.instances: Dict[str, ProcessStatus] = {}
        self.argv: Dict[str, List[str]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_start = False
        self.start_status = ProcessStatus.RUNNING
        self.start_delay = 0.0
        self._lock = threading.Lock()

    def start(self, instance_name, argv):
        with self._lock:
            self.calls.append(("start", instance_name))
        if self.start_delay:
            time.sleep(self.start_delay)
        with self._lock:
            if self.fail_start:
                raise ProcessControlError("start", instance_name, "facility refused to start")
            self.instances[instance_name] = self.start_status
            self.argv[instance_name] = list(argv)

    def stop(self, instance_name):
        with self._lock:
            self.calls.append(("stop", instance_name))
            status = self.instances.pop(instance_name, None)
            return status is not None and status != ProcessStatus.STOPPED

    def status(self, instance_name):
        with self._lock:
            return self.instances.get(instance_name, ProcessStatus.STOPPED)

    def list_instances(self, prefix):
        with self._lock:
            return {name: status for name, status in self.instances.items() if name.startswith(f"{prefix}-")}

    def crash(self, instance_name):
        with self._lock:
            self.instances[instance_name] = ProcessStatus.FAILED

    def starts(self) -> List[str]:
        return [name for op, name in self.calls if op == "start"]

    def stops(self) -> List[str]:
        return [name for op, name in self.calls if op == "stop"]


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads, with foreign keys enforced"""
    db_engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    @event.listens_for(db_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Create in-memory database for testing"""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def media_root(tmp_path):
    root = tmp_path / "videos"
    root.mkdir()
    (root / "intro.mp4").write_bytes(b"\x00" * 16)
    (root / "loop.mp4").write_bytes(b"\x00" * 16)
    return root


@pytest.fixture
def app_config(tmp_path, media_root):
    return AppConfig(
        data_dir=tmp_path,
        database_url='sqlite://',
        media_root=media_root,
        ffmpeg_path='/usr/bin/ffmpeg',
        process_backend='local',
        unit_prefix='stream',
        control_timeout=2.0,
        start_timeout=0.3,
    )


@pytest.fixture
def facility():
    return FakeProcessControl()


@pytest.fixture
def orchestrator(app_config, session_factory, facility):
    orch = Orchestrator(app_config, session_factory=session_factory, facility=facility, start_poll_interval=0.01)
    yield orch
    orch.pool.stop()


@pytest.fixture
def registry(orchestrator):
    return orchestrator.registry


@pytest.fixture
def supervisor(orchestrator):
    return orchestrator.supervisor


@pytest.fixture
def schedule_engine(orchestrator):
    return orchestrator.engine


@pytest.fixture
def reconciler(orchestrator):
    return orchestrator.reconciler


@pytest.fixture
def session_config():
    def _make(name="Morning show", source="intro.mp4", **overrides):
        values = dict(
            name=name,
            source=source,
            platform="youtube",
            stream_key="abcd-1234-efgh",
        )
        values.update(overrides)
        return SessionCreate(**values)
    return _make
