"""Database configuration and session management."""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Dict

from dotenv import load_dotenv
from sqlalchemy import DateTime, MetaData, create_engine, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

# Load environment variables
load_dotenv()


class Base(DeclarativeBase):
    """Shared base for all models."""

    metadata = MetaData()

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///publisher.db")


def build_engine(database_url: str) -> Engine:
    """Create an engine tuned for the target backend."""
    is_postgres = database_url.startswith("postgresql")

    connect_args: Dict[str, Any] = {}
    engine_kwargs: Dict[str, Any] = {
        "echo": False,
        "future": True,
    }

    if is_postgres:
        # Production PostgreSQL Settings
        engine_kwargs.update({
            "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "20")),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "3600")),
            "pool_pre_ping": True,
        })

        ssl_mode = os.getenv("DB_SSL_MODE", "prefer")  # 'require' for strict RDS
        if ssl_mode:
            connect_args["sslmode"] = ssl_mode
            engine_kwargs["connect_args"] = connect_args
    else:
        # SQLite Settings for Dev. Row locks are not available here, the
        # dispatcher's status re-check is what keeps claims exclusive.
        connect_args["check_same_thread"] = False
        engine_kwargs["connect_args"] = connect_args

    return create_engine(database_url, **engine_kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)
