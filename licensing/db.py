from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final, Iterator, Optional

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import Session, sessionmaker

from alembic import command
from config import APP_ENV, DATABASE_ECHO, DATABASE_URL, ROOT_DIR
from observability import get_logger, log_event

from .models import Base

SessionFactory = Callable[[], Session]

LICENSE_TABLES: Final[tuple[str, ...]] = tuple(sorted(Base.metadata.tables))
# Concurrent confirmations contend for the SQLite write lock; wait instead of failing.
SQLITE_BUSY_TIMEOUT_SECONDS: Final[int] = 30

_LOGGER = get_logger("vipserver.licensing.db")


def _parse_url(database_url: str) -> Optional[URL]:
    try:
        return make_url(str(database_url or "").strip())
    except ArgumentError:
        return None


def _sqlite_file(url: URL) -> Optional[Path]:
    if url.get_backend_name() != "sqlite":
        return None
    if not url.database or url.database == ":memory:":
        return None
    path = Path(url.database).expanduser()
    return path if path.is_absolute() else (Path.cwd() / path).resolve()


def build_session_factory(database_url: str) -> tuple[Engine, SessionFactory]:
    url = _parse_url(database_url)
    if url is None:
        raise RuntimeError(f"invalid DATABASE_URL: {database_url!r}")
    kwargs: dict[str, Any] = {"echo": DATABASE_ECHO, "pool_pre_ping": True}
    if url.get_backend_name() == "sqlite":
        # Blocking service calls run on worker threads.
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
        db_file = _sqlite_file(url)
        if db_file is not None:
            db_file.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, **kwargs)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


ENGINE, SessionLocal = build_session_factory(DATABASE_URL)


def _is_production_env() -> bool:
    return str(APP_ENV or "").strip().lower() in {"prod", "production"}


def _is_postgres_url(database_url: str) -> bool:
    url = _parse_url(database_url)
    return url is not None and url.get_backend_name() == "postgresql"


def missing_license_tables(engine: Engine) -> list[str]:
    present = set(inspect(engine).get_table_names())
    return [name for name in LICENSE_TABLES if name not in present]


def upgrade_license_schema(database_url: str, revision: str = "head") -> None:
    """Apply the alembic migrations under ``alembic/`` to ``database_url``."""

    root = Path(ROOT_DIR).resolve()
    config_path = root / "alembic.ini"
    if not config_path.exists():
        raise RuntimeError(f"missing alembic.ini: {config_path}")
    alembic_cfg = AlembicConfig(str(config_path))
    alembic_cfg.set_main_option("script_location", str(root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, revision)


def init_license_db(engine: Engine | None = None) -> None:
    """
    Make sure every license table exists.

    With an explicit engine the tables are created from the models; otherwise
    the configured database is migrated to head. Either way a schema missing
    any license table is an error.
    """

    if engine is not None:
        Base.metadata.create_all(bind=engine)
        target = engine
    else:
        if _is_production_env() and not _is_postgres_url(DATABASE_URL):
            raise RuntimeError("DATABASE_URL must be PostgreSQL in production")
        upgrade_license_schema(DATABASE_URL)
        target = ENGINE
    missing = missing_license_tables(target)
    if missing:
        raise RuntimeError(f"license schema incomplete, missing tables: {', '.join(missing)}")
    log_event(_LOGGER, 10, "license.db.ready", backend=target.url.get_backend_name(), tables=len(LICENSE_TABLES))


@contextmanager
def session_scope(session_factory: SessionFactory | None = None) -> Iterator[Session]:
    factory = session_factory or SessionLocal
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
