"""Database connection and session management."""

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import DATABASE_URL

engine = create_engine(DATABASE_URL, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """All-or-nothing scope for one pipeline run.

    Commits when the block exits cleanly; any exception rolls back every
    write made inside the block and propagates.
    """
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise


def init_db(bind: Engine | None = None) -> None:
    """Create all tables (and the PostGIS extension when running on PostgreSQL)."""
    from . import models  # noqa: F401  register tables on Base.metadata

    bind = bind or engine
    if bind.dialect.name == "postgresql":
        with bind.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))
            conn.commit()

    Base.metadata.create_all(bind=bind)
