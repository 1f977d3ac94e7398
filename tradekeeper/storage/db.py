"""
Database engine and session management.

PostgreSQL in production. SQLite is accepted for local runs and tests
(in-memory databases share one connection across threads).
"""
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from tradekeeper.monitoring.logger import get_logger

logger = get_logger(__name__)

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: postgresql:// or sqlite:// connection string
        """
        if database_url.startswith("postgresql"):
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                pool_timeout=30,
            )
        elif database_url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, echo=False, **kwargs)
        else:
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Use a postgresql:// or sqlite:// connection string."
            )

        self.database_url = database_url
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self):
        """Create all tables."""
        # Registers the ORM models on Base.metadata
        import tradekeeper.storage.repository  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Commits on success, rolls back on any exception and re-raises.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def init_db(database_url: str) -> Database:
    """
    Initialize database with specific URL and create tables.

    Args:
        database_url: postgresql:// or sqlite:// connection string

    Returns:
        Database instance
    """
    db = Database(database_url)
    db.create_all()
    logger.info("DATABASE_INITIALIZED", dialect=db.engine.dialect.name)
    return db
