"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the deposit refund monitor.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def _engine_kwargs(database_url: str) -> Dict[str, Any]:
    """Pool settings per backend: PostgreSQL in production, SQLite for local runs and tests"""
    if database_url.startswith("sqlite"):
        return {
            "echo": False,
            # Store calls run in worker threads; 15s busy timeout serializes concurrent writers
            "connect_args": {"check_same_thread": False, "timeout": 15},
        }
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,    # Validate connections before use
        "pool_recycle": 3600,     # Recycle connections every hour
        "pool_timeout": 30,
        "echo": False,
        "connect_args": {
            "connect_timeout": 10,  # Fail fast on slow connections
            "application_name": "deposit_refund_monitor",
        },
    }


def build_engine(database_url: str) -> Engine:
    """Create an engine configured for the given database URL"""
    return create_engine(database_url, **_engine_kwargs(database_url))


def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory used by the reconciliation store"""
    return sessionmaker(
        bind=bind,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # Records are handed back to async callers after commit
    )


engine = build_engine(Config.DATABASE_URL)

SessionLocal = build_session_factory(engine)


def create_tables(bind: Engine = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind if bind is not None else engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        Base.metadata.create_all(bind=target, checkfirst=True)

        existing_tables = inspect(target).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        logger.debug(f"📋 Tables: {', '.join(sorted(existing_tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


@contextmanager
def managed_session(session_factory: sessionmaker = None):
    """Sync context manager for database sessions"""
    session: Session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def test_connection(bind: Engine = None) -> bool:
    """Test database connection"""
    target = bind if bind is not None else engine
    try:
        with target.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
