from database import engine as default_engine, Base, SessionLocal
from models import Setting
from constants import SettingKeys, SchedulerConfig
from sqlalchemy import inspect, text
from sqlalchemy.exc import NoSuchTableError
from sqlalchemy.orm import Session
import logging

logger = logging.getLogger(__name__)


DEFAULT_SETTINGS = {
    SettingKeys.SCHEDULER_POLL_INTERVAL: str(SchedulerConfig.MAX_POLL_INTERVAL_SECONDS),
    SettingKeys.DISPATCH_CONCURRENCY: str(SchedulerConfig.DISPATCH_CONCURRENCY),
    SettingKeys.HEALTH_CHECK_INTERVAL: str(SchedulerConfig.HEALTH_CHECK_INTERVAL_SECONDS),
    SettingKeys.SERVER_HOST: '0.0.0.0',  # Listen on all interfaces by default
}

# (table, column, DDL) added after the first release of each table
_COLUMN_MIGRATIONS = [
    ('schedules', 'action', "VARCHAR DEFAULT 'start' NOT NULL"),
    ('schedules', 'disabled_reason', "VARCHAR"),
    ('schedules', 'last_error', "TEXT"),
    ('sessions', 'owner', "VARCHAR"),
]


def _check_column_exists(inspector, table: str, column: str) -> bool:
    try:
        return column in [col['name'] for col in inspector.get_columns(table)]
    except NoSuchTableError:
        return False


def _add_column_if_missing(engine, inspector, table: str, column: str, column_def: str) -> bool:
    """Add a column to a table if it doesn't exist"""
    if _check_column_exists(inspector, table, column):
        return False
    logger.info(f"Running migration: Adding '{column}' column to {table} table...")
    with engine.connect() as conn:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {column_def}"))
        conn.commit()
    logger.info(f"✅ Migration complete: '{column}' column added to {table}")
    return True


def _run_essential_migrations(engine) -> int:
    """Bring databases created by older releases up to the current schema"""
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    applied = 0
    for table, column, column_def in _COLUMN_MIGRATIONS:
        if table in tables and _add_column_if_missing(engine, inspector, table, column, column_def):
            applied += 1

    if applied:
        logger.info(f"✅ Database schema updated: {applied} migration(s) applied")
    else:
        logger.debug("Database schema is up to date")
    return applied


def read_setting(db: Session, key: str, default, cast=float):
    """
    Read a runtime setting, falling back to ``default`` when missing or invalid.

    Example:
        interval = read_setting(db, SettingKeys.SCHEDULER_POLL_INTERVAL, 30.0)
    """
    setting = db.query(Setting).filter(Setting.key == key).first()
    if setting is None:
        return default
    try:
        return cast(setting.value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid {key} setting: {setting.value!r}, using default {default}")
        return default


def init_database(engine=None, session_factory=None):
    """Create all tables and insert default settings"""
    engine = engine or default_engine
    session_factory = session_factory or SessionLocal

    Base.metadata.create_all(bind=engine)
    _run_essential_migrations(engine)

    db = session_factory()
    try:
        for key, value in DEFAULT_SETTINGS.items():
            existing = db.query(Setting).filter(Setting.key == key).first()
            if not existing:
                db.add(Setting(key=key, value=value))
        db.commit()
        logger.info("✅ Database initialized successfully")
    finally:
        db.close()


if __name__ == "__main__":
    init_database()
