import logging
import threading
import time
import traceback
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine

from app.db import BuildAdminConnectionUrl, _read_int_env

logger = logging.getLogger("app.migrations")

BACKEND_DIR = Path(__file__).resolve().parents[2]
ALEMBIC_INI = BACKEND_DIR / "alembic.ini"


def BuildAlembicConfig(database_url: str | None = None) -> Config:
    if not ALEMBIC_INI.exists():
        raise RuntimeError(f"Missing alembic.ini at {ALEMBIC_INI}")

    alembic_cfg = Config(str(ALEMBIC_INI))
    alembic_cfg.set_main_option("script_location", str(BACKEND_DIR / "alembic"))
    url = database_url or BuildAdminConnectionUrl()
    # configparser treats % as interpolation; url-encoded passwords contain it.
    alembic_cfg.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def HeadRevision(alembic_cfg: Config) -> str | None:
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


def CurrentRevision(database_url: str) -> str | None:
    engine = create_engine(database_url)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def RunMigrations(database_url: str | None = None) -> None:
    """Upgrade the allowance schema to head.

    The upgrade runs on a daemon thread and raises TimeoutError once
    MIGRATIONS_TIMEOUT_SECONDS have elapsed. A database already at head is
    left untouched.
    """
    url = database_url or BuildAdminConnectionUrl()
    alembic_cfg = BuildAlembicConfig(url)
    head = HeadRevision(alembic_cfg)
    current = CurrentRevision(url)
    if current == head:
        logger.info("schema already at head revision=%s", head)
        return

    timeout_seconds = _read_int_env("MIGRATIONS_TIMEOUT_SECONDS", 600)
    progress_seconds = max(1, _read_int_env("MIGRATIONS_PROGRESS_LOG_SECONDS", 20))
    logger.info(
        "upgrading schema from=%s to=%s (timeout=%ss)",
        current or "empty",
        head,
        timeout_seconds,
    )

    failure: list[str] = []
    finished = threading.Event()

    def _Upgrade() -> None:
        try:
            command.upgrade(alembic_cfg, "head")
        except Exception:  # noqa: BLE001
            failure.append(traceback.format_exc())
        finally:
            finished.set()

    worker = threading.Thread(target=_Upgrade, name="alembic-upgrade", daemon=True)
    worker.start()
    started = time.monotonic()

    while not finished.wait(timeout=progress_seconds):
        elapsed = int(time.monotonic() - started)
        if timeout_seconds > 0 and elapsed >= timeout_seconds:
            logger.error("schema upgrade timed out after %ss", elapsed)
            raise TimeoutError(f"schema upgrade timed out after {elapsed}s")
        logger.info("schema upgrade still running (%ss elapsed)", elapsed)

    if failure:
        logger.error("schema upgrade failed:\n%s", failure[0])
        raise RuntimeError("schema upgrade failed")

    logger.info("schema upgraded to revision=%s", head)
