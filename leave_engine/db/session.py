"""
Database session management
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from leave_engine.core.config import settings
from leave_engine.db.base import Base

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    echo=False,
    connect_args=connect_args,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_models() -> None:
    """Create all tables for SQLite databases (Postgres is managed by Alembic)."""
    import leave_engine.models  # noqa: F401 - registers models on Base.metadata

    if "sqlite" in settings.DATABASE_URL:
        Base.metadata.create_all(bind=engine)
