"""
Runtime Configuration

Resolves deployment-level settings from environment variables.
Values that operators tune at runtime live in the settings table instead
(see init_db.py); this module covers what must be known before the
database is even opened.

Environment variables:
- STREAM_DATA_DIR: Base directory for the database, logs and runtime files
- DATABASE_URL: SQLAlchemy URL (defaults to SQLite inside STREAM_DATA_DIR)
- MEDIA_ROOT: Directory that every session source must live under
- FFMPEG_PATH: ffmpeg binary used in the encoding command
- PROCESS_BACKEND: 'systemd' (default) or 'local'
- UNIT_PREFIX: Prefix for external process instance names
- CONTROL_TIMEOUT: Timeout in seconds for a single process-control call
- START_TIMEOUT: Seconds a started process has to reach running
"""
import os
import shutil
import logging
from dataclasses import dataclass
from pathlib import Path

from constants import SupervisorConfig

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def get_data_dir() -> Path:
    """Directory holding orchestrator.db, logs/ and run/ (created on demand)"""
    data_dir = Path(os.environ.get('STREAM_DATA_DIR', str(Path.home() / '.stream-orchestrator')))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_database_url() -> str:
    """SQLAlchemy URL for the orchestrator database"""
    url = os.environ.get('DATABASE_URL')
    if url:
        return url
    return f"sqlite:///{get_data_dir() / 'orchestrator.db'}"


def get_ffmpeg_path() -> str:
    """
    Locate the ffmpeg binary.

    FFMPEG_PATH wins; otherwise the first ffmpeg on PATH, falling back to
    the conventional system location so command assembly stays deterministic.
    """
    configured = os.environ.get('FFMPEG_PATH')
    if configured:
        return configured
    return shutil.which('ffmpeg') or '/usr/bin/ffmpeg'


@dataclass(frozen=True)
class AppConfig:
    """Immutable snapshot of deployment configuration"""

    data_dir: Path
    database_url: str
    media_root: Path
    ffmpeg_path: str
    process_backend: str
    unit_prefix: str
    control_timeout: float
    start_timeout: float

    @property
    def log_dir(self) -> Path:
        return self.data_dir / 'logs'

    @property
    def run_dir(self) -> Path:
        return self.data_dir / 'run'

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build configuration from the current environment"""
        data_dir = get_data_dir()
        backend = os.environ.get('PROCESS_BACKEND', 'systemd').strip().lower()
        if backend not in ('systemd', 'local'):
            logger.warning(f"Unknown PROCESS_BACKEND={backend!r}, falling back to 'systemd'")
            backend = 'systemd'

        return cls(
            data_dir=data_dir,
            database_url=get_database_url(),
            media_root=Path(os.environ.get('MEDIA_ROOT', str(data_dir / 'videos'))).expanduser(),
            ffmpeg_path=get_ffmpeg_path(),
            process_backend=backend,
            unit_prefix=os.environ.get('UNIT_PREFIX', SupervisorConfig.UNIT_PREFIX),
            control_timeout=_env_float('CONTROL_TIMEOUT', SupervisorConfig.CONTROL_TIMEOUT_SECONDS),
            start_timeout=_env_float('START_TIMEOUT', SupervisorConfig.START_TIMEOUT_SECONDS),
        )
