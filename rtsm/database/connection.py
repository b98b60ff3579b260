"""
RTSM - Database Connection Manager
==================================
Engine and transaction management for the randomization store.

Every engine operation runs inside `DatabaseManager.session()`: one session,
one transaction, committed when the block completes and rolled back when it
raises. Claims rely on that boundary for their atomicity.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from .config import DatabaseConfig

logger = logging.getLogger(__name__)

# Dialects that implement SELECT ... FOR UPDATE SKIP LOCKED
SKIP_LOCKED_DIALECTS = ("postgresql", "mysql", "oracle")

SQLITE_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def engine_options(config: DatabaseConfig) -> Dict[str, Any]:
    """create_engine() keyword arguments for the configured backend."""
    if config.is_sqlite:
        options: Dict[str, Any] = {
            # Threads share the engine; writers wait on the file lock instead of failing
            "connect_args": {"check_same_thread": False, "timeout": 30},
            "echo": config.echo,
        }
        if config.connection_url in SQLITE_MEMORY_URLS:
            options["poolclass"] = StaticPool
        return options

    return {
        "poolclass": QueuePool,
        "pool_pre_ping": True,
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_timeout": config.pool_timeout,
        "pool_recycle": config.pool_recycle,
        "echo": config.echo,
    }


class DatabaseManager:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    def initialize(self) -> None:
        """Create the engine and session factory on first use."""
        if self.is_initialized:
            return

        try:
            engine = create_engine(self.config.connection_url, **engine_options(self.config))
        except SQLAlchemyError as e:
            logger.error(f"Database engine creation failed for {self.config.display_name}: {e}")
            raise

        self._session_factory = sessionmaker(
            bind=engine,
            autoflush=False,
            # Results are returned after commit, keep loaded attributes readable
            expire_on_commit=False,
        )
        self._engine = engine
        logger.info(f"Database ready: {self.config.display_name} (dialect={engine.dialect.name})")

    @property
    def engine(self) -> Engine:
        self.initialize()
        return self._engine

    @property
    def supports_skip_locked(self) -> bool:
        return self.engine.dialect.name in SKIP_LOCKED_DIALECTS

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        One unit of work.

        Usage:
            with db_manager.session() as session:
                scheme = SchemeRepository(session).get_by_id(config_id)
        """
        self.initialize()
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        """True when a trivial query round-trips."""
        try:
            with self.session() as session:
                session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        return True

    def create_tables(self, drop_existing: bool = False) -> None:
        """Create the schema (optionally dropping it first)."""
        from .models import Base

        if drop_existing:
            Base.metadata.drop_all(self.engine)
            logger.warning(f"Dropped all tables on {self.config.display_name}")
        Base.metadata.create_all(self.engine)
        logger.info(f"Tables created: {', '.join(sorted(Base.metadata.tables))}")

    def close(self) -> None:
        """Dispose of pooled connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connections closed")


# =============================================================================
# SINGLETON
# =============================================================================

_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Process-wide manager configured from the environment."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
        _db_manager.initialize()
    return _db_manager


def reset_db_manager() -> None:
    """Drop the process-wide manager so the next call re-reads the environment."""
    global _db_manager
    if _db_manager is not None:
        _db_manager.close()
    _db_manager = None
