"""Database setup and session utilities for SQLAlchemy.

This module centralizes engine/session initialization, metadata base, and helpers:
- init_db: Ensures the pgvector extension exists and creates the document, chunk,
  pipeline and agent configuration tables plus the IVFFLAT index over
  chunks.embedding for vector similarity search.
- session_scope: Context-managed transactional scope for imperative workflows.
- get_db: FastAPI dependency to yield a per-request SQLAlchemy Session.
- is_postgres: dialect check used to pick SQL-side vs in-process vector ranking.

Configuration is read from contentforge.config.settings.DATABASE_URL.
"""
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from contentforge.config import settings

# SQLAlchemy setup
engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()

SessionFactory = Callable[[], Session]


def is_postgres(bind) -> bool:
    """Return True when the engine/connection/session talks to PostgreSQL."""
    if isinstance(bind, Session):
        bind = bind.get_bind()
    return bind.dialect.name == "postgresql"


def init_db(bind: Optional[Engine] = None) -> None:
    """Initialize database extensions, tables, and vector indexes.

    Ensures pgvector extension is available, creates tables from SQLAlchemy metadata,
    and creates the IVFFLAT index over chunks.embedding if missing. On non-PostgreSQL
    engines (local tests) only the tables are created.

    This function is idempotent and safe to run multiple times.
    """
    bind = bind or engine
    postgres = is_postgres(bind)
    if postgres:
        with bind.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.commit()

    # Import models after Base is defined
    from contentforge import models  # noqa: F401

    Base.metadata.create_all(bind=bind)

    if not postgres:
        return

    # Note: Requires pgvector >= 0.4.0; table/index names must match models.
    with bind.connect() as conn:
        conn.execute(
            text(
                """
                DO $$
                BEGIN
                    IF NOT EXISTS (
                        SELECT 1 FROM pg_indexes WHERE indexname = 'idx_chunks_embedding_ivfflat'
                    ) THEN
                        CREATE INDEX idx_chunks_embedding_ivfflat
                        ON chunks USING ivfflat (embedding vector_cosine_ops)
                        WITH (lists = 100);
                    END IF;
                END$$;
                """
            )
        )
        conn.commit()


@contextmanager
def session_scope(factory: Optional[SessionFactory] = None):
    """Provide a transactional scope around a series of operations.

    Args:
        factory: Session factory to use; defaults to SessionLocal.

    Yields:
        Session: A SQLAlchemy session bound to the configured engine.

    Notes:
        - Commits on successful exit.
        - Rolls back and re-raises on exception.
        - Always closes the session at the end.
    """
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator:
    """FastAPI dependency that yields a SQLAlchemy Session.

    Yields:
        Session: A session tied to the current request lifecycle.

    Notes:
        Ensures the session is closed after the request finishes.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
