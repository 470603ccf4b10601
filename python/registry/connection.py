"""
Database access for the GN Registry

One synchronous engine per process, shared through a module-level
DatabaseSessionProvider. Request handlers read through a request-scoped
session (``get_db`` / ``provider.get_session``); administrative mutations
open a UnitOfWork so the business commit happens before the audit record is
written.

PostgreSQL is the production target. Sessions against it get a
``statement_timeout`` so a runaway list query fails with a storage error
instead of holding a pooled connection.
"""

import os
import logging
from typing import Generator, Optional, Callable
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from registry.models import Base

logger = logging.getLogger(__name__)

APPLICATION_NAME = "gn-registry"


# ============================================
# SETTINGS
# ============================================

@dataclass
class DatabaseSettings:
    """Where the registry database lives and how the pool is sized."""
    host: str = "localhost"
    port: int = 5432
    database: str = "gn_registry"
    user: str = "registry_user"
    password: str = "registry_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    statement_timeout_ms: int = 30000
    echo: bool = False
    url: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        """Settings from DB_* variables; DATABASE_URL replaces the parts."""
        env = os.getenv
        return cls(
            host=env("DB_HOST", cls.host),
            port=int(env("DB_PORT", str(cls.port))),
            database=env("DB_NAME", cls.database),
            user=env("DB_USER", cls.user),
            password=env("DB_PASSWORD", cls.password),
            pool_size=int(env("DB_POOL_SIZE", str(cls.pool_size))),
            max_overflow=int(env("DB_MAX_OVERFLOW", str(cls.max_overflow))),
            statement_timeout_ms=int(env("DB_STATEMENT_TIMEOUT_MS", str(cls.statement_timeout_ms))),
            echo=env("DB_ECHO", "false").lower() == "true",
            url=env("DATABASE_URL"),
        )

    @classmethod
    def from_config(cls, db_config) -> 'DatabaseSettings':
        """
        Settings from the ``database`` section of config.yaml.

        DATABASE_URL still wins so a deployment can point elsewhere without
        editing the file.
        """
        return cls(
            host=db_config.host,
            port=db_config.port,
            database=db_config.name,
            user=db_config.user,
            password=db_config.password,
            pool_size=db_config.pool_size,
            max_overflow=db_config.max_overflow,
            echo=db_config.echo,
            url=os.getenv("DATABASE_URL") or db_config.url,
        )

    def get_url(self) -> str:
        if self.url:
            return self.url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def engine_options(self) -> dict:
        return {
            "poolclass": QueuePool,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


# ============================================
# STARTUP RETRY
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Retry connection-level failures (OperationalError) with exponential
    backoff. Anything else is a configuration problem and fails at once.
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


db_retry = create_retry_decorator()


# ============================================
# UNIT OF WORK
# ============================================

class UnitOfWork:
    """
    One transaction for one administrative mutation.

    Nothing is committed unless ``commit()`` is called; leaving the block on
    an exception rolls back.

    Usage:
        with provider.get_unit_of_work() as uow:
            UserRepository(uow.session).set_active(user_id, False)
            uow.commit()
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._session: Optional[Session] = None

    def __enter__(self) -> 'UnitOfWork':
        self._session = self._session_factory()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and self._session is not None:
            self._session.rollback()
        self.close()

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("UnitOfWork used outside its 'with' block")
        return self._session

    def commit(self) -> None:
        self.session.commit()

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the engine and session factory.

    Sessions are created with ``expire_on_commit=False`` so snapshots taken
    for the audit record stay readable after the business commit.

    Usage:
        provider = DatabaseSessionProvider(DatabaseSettings.from_config(config.database))
        provider.init()

        with provider.session_scope() as session:
            session.add(node)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Args:
            settings: Connection settings (DB_* environment if omitted)
            engine: Ready-made engine, e.g. in-memory SQLite for tests
        """
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None

    def init(self, echo: Optional[bool] = None) -> None:
        """Create the engine (with retry) and the session factory. Idempotent."""
        if self._session_factory is not None:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = self._connect()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )
        logger.info(f"Database ready ({self._engine.dialect.name})")

    @db_retry
    def _connect(self) -> Engine:
        url = self._settings.get_url()
        options = self._settings.engine_options()
        if url.startswith("postgresql"):
            options["connect_args"] = {"application_name": APPLICATION_NAME}

        engine = create_engine(url, echo=self._settings.echo, **options)
        if engine.dialect.name == "postgresql":
            self._apply_statement_timeout(engine)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return engine

    def _apply_statement_timeout(self, engine: Engine) -> None:
        timeout_ms = int(self._settings.statement_timeout_ms)

        @event.listens_for(engine, "connect")
        def set_timeout(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute(f"SET statement_timeout = {timeout_ms}")
            cursor.close()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self.init()
        return self._session_factory

    def get_session(self) -> Generator[Session, None, None]:
        """Request-scoped session for FastAPI dependencies."""
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    def get_unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self.session_factory)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Commit on success, roll back on any exception."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create the schema directly (tests and first-run seeding)."""
        Base.metadata.create_all(self.engine)
        logger.info("Registry tables created")

    def health_check(self) -> bool:
        """True when a trivial query round-trips."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, RuntimeError) as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._session_factory = None


# ============================================
# PROCESS-WIDE PROVIDER
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


def set_db_provider(provider: Optional[DatabaseSessionProvider]) -> None:
    """Swap the process-wide provider (tests) or clear it with None."""
    global _db_provider
    _db_provider = provider


def init_db(settings: Optional[DatabaseSettings] = None, echo: bool = False) -> DatabaseSessionProvider:
    """Create and initialize the process-wide provider at application startup."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider(settings=settings)
    _db_provider.init(echo=echo)
    return _db_provider


def close_db() -> None:
    global _db_provider
    if _db_provider is not None:
        _db_provider.close()
        _db_provider = None


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding a session from the process-wide provider.

    Usage:
        @app.get("/families")
        def list_families(db: Session = Depends(get_db)):
            ...
    """
    yield from get_db_provider().get_session()


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """Initialized provider around a caller-supplied engine (e.g. SQLite StaticPool)."""
    provider = DatabaseSessionProvider(settings=settings, engine=engine)
    provider.init()
    return provider
