"""
Database Configuration
SQLAlchemy engine and session management.
Supports both SQLite (local dev) and PostgreSQL (production).
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from studio.core.config import settings

logger = logging.getLogger(__name__)

# Detect if using SQLite
is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# Create database engine with appropriate settings
if is_sqlite:
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args={"check_same_thread": False},  # Needed for SQLite
    )
else:
    # PostgreSQL settings
    engine = create_engine(
        settings.DATABASE_URL,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for models
Base = declarative_base()


def init_db(bind=None):
    """Initialize database tables."""
    from studio.models import BatchJob, GeneratedImage  # noqa

    try:
        Base.metadata.create_all(bind=bind or engine)
    except Exception as e:
        # In production, tables may already exist or be managed by migrations
        logger.warning(f"Could not create database tables: {e}")
