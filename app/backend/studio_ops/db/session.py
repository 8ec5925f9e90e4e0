"""Database engine, session factory and start-up schema helper."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from studio_ops.core.config import get_settings
from studio_ops.core.logging import get_logger
from studio_ops.db.base import Base

logger = get_logger(__name__)

engine = create_engine(get_settings().database_url, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db() -> None:
    """Create missing tables when automatic schema creation is enabled."""

    import studio_ops.models.entities  # noqa: F401

    if not get_settings().db_auto_create:
        logger.info("Automatic schema creation disabled; skipping create_all.")
        return
    logger.info("Creating missing database tables.")
    Base.metadata.create_all(bind=engine)
