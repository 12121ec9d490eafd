"""
Shared SQLAlchemy engine construction.

AuthDB and SecurityProfileDB talk to the same database; both build their
engine here so pool settings live in one place.
"""
import os
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

from ..utils.secrets import get_postgres_password

logger = logging.getLogger(__name__)


def get_database_url() -> str:
    """
    Resolve the database URL.

    DATABASE_URL wins; otherwise the URL is assembled from POSTGRES_* variables.
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "orthrus")
    user = os.getenv("POSTGRES_USER", "orthrus_user")
    password = get_postgres_password()
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


def create_db_engine(connection_string: Optional[str] = None) -> Engine:
    """
    Create an engine with the production pool settings.

    SQLite (used by tests and single-node setups) keeps SQLAlchemy's
    default pool, which does not accept the QueuePool sizing arguments.
    """
    if connection_string is None:
        connection_string = get_database_url()

    if connection_string.startswith("sqlite"):
        # Request handlers run in a thread pool
        return create_engine(connection_string, connect_args={"check_same_thread": False})

    return create_engine(
        connection_string,
        poolclass=QueuePool,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_pre_ping=True,  # Test connections before use (detect stale)
        pool_recycle=300,    # Recycle connections every 5 minutes
    )
