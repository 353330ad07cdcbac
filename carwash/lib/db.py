"""
Database engine and session management using SQLAlchemy 2.x.
Provides connection pooling, the session factory and transaction-scoped
locks for check-then-insert units of work.
"""
import enum
from contextlib import contextmanager
from typing import Any, Dict, Generator, Type
from uuid import uuid4

from sqlalchemy import Enum as SQLEnum, create_engine, func, select
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase
from sqlalchemy.pool import StaticPool

from carwash.lib.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by the carwash models."""
    pass


def new_id(prefix: str) -> str:
    """Prefixed string primary key, e.g. BOOK_9f1c2e4a7b3d5c60."""
    return f"{prefix}_{uuid4().hex[:16]}"


def enum_column_type(enum_cls: Type[enum.Enum], name: str) -> SQLEnum:
    """Enum column that stores member values ('crew_assigned'), not names."""
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


def _engine_options(url: str) -> Dict[str, Any]:
    """Pool options per backend; SQLite gets a single shared connection."""
    if url.startswith("sqlite"):
        options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
            options["poolclass"] = StaticPool
        return options
    return {
        "pool_pre_ping": True,  # Verify connections before using
        "pool_size": 5,
        "max_overflow": 10,
    }


engine = create_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_options(settings.database_url),
)

# Session factory
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI routes to get a database session.

    Usage:
        @app.get("/example")
        def example(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Unit of work outside a request: commit on success, roll back on error.

    Usage:
        with get_db_context() as db:
            db.add(User(email="crew@example.com", full_name="Crew", role=UserRole.CREW))
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def lock_for_transaction(db: Session, key: str) -> None:
    """
    Serialize transactions that share `key` until they commit or roll back.

    PostgreSQL takes a transaction-scoped advisory lock. Other backends get
    no lock; SQLite only backs tests and local runs.
    """
    if db.get_bind().dialect.name == "postgresql":
        db.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))


def init_db():
    """
    Create every table registered on Base.metadata.
    Import carwash.models first so all tables are registered.
    """
    Base.metadata.create_all(bind=engine)


def drop_db():
    """
    Drop every table; used by the test suite.
    """
    Base.metadata.drop_all(bind=engine)
