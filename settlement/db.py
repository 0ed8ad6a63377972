from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterator

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from alembic import command
from config import APP_ENV, DATABASE_ECHO, DATABASE_URL, ROOT_DIR

from .models import Base

SessionFactory = Callable[[], Session]


def _ensure_sqlite_parent(url: str) -> None:
    prefix = "sqlite:///"
    if not url.startswith(prefix):
        return
    db_path = url[len(prefix):].split("?", 1)[0]
    if not db_path or db_path == ":memory:":
        return
    path = Path(db_path).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)


def _build_engine(url: str) -> Engine:
    kwargs: dict[str, Any] = {
        "future": True,
        "echo": DATABASE_ECHO,
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


def build_session_factory(database_url: str) -> tuple[Engine, SessionFactory]:
    _ensure_sqlite_parent(database_url)
    engine = _build_engine(database_url)
    session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    return engine, session_factory


@lru_cache(maxsize=1)
def default_session_factory() -> SessionFactory:
    """Session factory for `DATABASE_URL`, built on first use."""

    _engine, session_factory = build_session_factory(DATABASE_URL)
    return session_factory


def _is_production_env() -> bool:
    return str(APP_ENV or "").strip().lower() in {"prod", "production"}


def _is_postgres_url(database_url: str) -> bool:
    normalized = str(database_url or "").strip().lower()
    return normalized.startswith("postgresql://") or normalized.startswith("postgresql+")


def _run_alembic_upgrade(database_url: str, revision: str = "head") -> None:
    config_path = Path(ROOT_DIR).resolve() / "alembic.ini"
    if not config_path.exists():
        raise RuntimeError(f"missing alembic.ini: {config_path}")
    alembic_cfg = AlembicConfig(str(config_path))
    alembic_cfg.set_main_option("script_location", str(Path(ROOT_DIR).resolve() / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, revision)


def init_settlement_db(engine: Engine | None = None, *, database_url: str | None = None) -> None:
    """
    Create tables directly on an explicit engine (tests, local tools), or
    migrate `database_url` to the Alembic head.
    """

    if engine is not None:
        Base.metadata.create_all(bind=engine)
        return
    url = database_url or DATABASE_URL
    if _is_production_env() and not _is_postgres_url(url):
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production")
    _run_alembic_upgrade(url)


@contextmanager
def session_scope(session_factory: SessionFactory | None = None) -> Iterator[Session]:
    factory = session_factory or default_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_database(session_factory: SessionFactory | None = None) -> tuple[bool, str | None]:
    """Run a trivial query; used by the health endpoint."""

    factory = session_factory or default_session_factory()
    session = factory()
    try:
        session.execute(text("SELECT 1"))
        return True, None
    except SQLAlchemyError as exc:
        return False, type(exc).__name__
    finally:
        session.close()
