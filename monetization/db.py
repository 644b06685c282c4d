from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from alembic import command
from config import APP_ENV, ROOT_DIR, SQLITE_BUSY_TIMEOUT_SECONDS
from observability import get_logger, log_event

from .models import Base

SessionFactory = Callable[[], Session]

_LOGGER = get_logger("jeezy.monetization.db")


def _ensure_sqlite_parent(url: str) -> None:
    for prefix in ("sqlite+pysqlite:///", "sqlite:///"):
        if url.startswith(prefix):
            break
    else:
        return
    db_path = url[len(prefix):].split("?", 1)[0]
    if not db_path or db_path == ":memory:":
        return
    path = Path(db_path).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)


def _is_sqlite_url(database_url: str) -> bool:
    return str(database_url or "").strip().lower().startswith("sqlite")


def _is_postgres_url(database_url: str) -> bool:
    normalized = str(database_url or "").strip().lower()
    return normalized.startswith("postgresql://") or normalized.startswith("postgresql+")


def _build_engine(url: str, *, echo: bool = False) -> Engine:
    kwargs: dict[str, Any] = {
        "future": True,
        "echo": echo,
        "pool_pre_ping": True,
    }
    if not _is_sqlite_url(url):
        return create_engine(url, **kwargs)

    kwargs["connect_args"] = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
    engine = create_engine(url, **kwargs)

    # pysqlite defers BEGIN until the first write, which breaks SAVEPOINT
    # nesting. Take the write lock up front so writers queue on busy_timeout.
    @event.listens_for(engine, "connect")
    def _sqlite_on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_session_factory(database_url: str, *, echo: bool = False) -> tuple[Engine, SessionFactory]:
    _ensure_sqlite_parent(database_url)
    engine = _build_engine(database_url, echo=echo)
    session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    return engine, session_factory


@contextmanager
def session_scope(session_factory: SessionFactory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def apply_transaction_timeouts(session: Session, *, lock_timeout_ms: int, statement_timeout_ms: int) -> None:
    """Bound how long the current transaction may wait on locks and statements."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        session.execute(text(f"SET LOCAL lock_timeout = '{int(lock_timeout_ms)}ms'"))
        session.execute(text(f"SET LOCAL statement_timeout = '{int(statement_timeout_ms)}ms'"))
    elif dialect == "sqlite":
        session.execute(text(f"PRAGMA busy_timeout = {int(lock_timeout_ms)}"))


class Database:
    """
    Storage client owning one engine and its session factory.

    Constructed explicitly at process start, opened once, passed to whoever
    needs sessions and disposed at shutdown.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = str(url or "").strip()
        if not self.url:
            raise ValueError("database url is required")
        self.echo = bool(echo)
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[SessionFactory] = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("database is not open")
        return self._engine

    @property
    def session_factory(self) -> SessionFactory:
        if self._session_factory is None:
            raise RuntimeError("database is not open")
        return self._session_factory

    def open(self) -> "Database":
        if not self.is_open:
            self._engine, self._session_factory = build_session_factory(self.url, echo=self.echo)
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None

    @contextmanager
    def session(self) -> Iterator[Session]:
        with session_scope(self.session_factory) as session:
            yield session

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def upgrade_schema(self, revision: str = "head") -> None:
        if str(APP_ENV or "").strip().lower() in {"prod", "production"} and not _is_postgres_url(self.url):
            raise RuntimeError("DATABASE_URL must be PostgreSQL in production")
        config_path = Path(ROOT_DIR).resolve() / "alembic.ini"
        if not config_path.exists():
            raise RuntimeError(f"missing alembic.ini: {config_path}")
        alembic_cfg = AlembicConfig(str(config_path))
        alembic_cfg.set_main_option("script_location", str(Path(ROOT_DIR).resolve() / "alembic"))
        alembic_cfg.set_main_option("sqlalchemy.url", self.url.replace("%", "%%"))
        alembic_cfg.attributes["configure_logger"] = False
        command.upgrade(alembic_cfg, revision)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as exc:  # noqa: BLE001
            log_event(_LOGGER, logging.WARNING, "db.ping_failed", error=str(exc))
            return False
        return True


def is_transient_db_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "deadlock" in message or "lock timeout" in message
