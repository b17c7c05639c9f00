# =====================================================
# FILE: app/core/database.py
# Database Connection and Session Management
# =====================================================

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import NullPool, QueuePool
from typing import Generator
from urllib.parse import quote_plus
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


def build_database_url() -> str:
    """Resolve the database URL from settings"""
    if settings.DATABASE_URL:
        return settings.DATABASE_URL

    # URL-encode the password to handle special characters like @ # $ etc.
    encoded_password = quote_plus(settings.DB_PASSWORD)
    return (
        f"mysql+pymysql://{settings.DB_USER}:{encoded_password}"
        f"@{settings.DB_HOST}:{settings.DB_PORT}/{settings.DB_NAME}"
    )


def create_db_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    SQLite gets the pysqlite transaction recipe so that SAVEPOINTs
    (used to isolate per-template trigger failures) behave correctly.
    """
    if database_url.startswith("sqlite"):
        db_engine = create_engine(
            database_url,
            echo=settings.DB_ECHO,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(db_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(db_engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return db_engine

    engine_args = {
        "pool_pre_ping": settings.DB_POOL_PRE_PING,
        "echo": settings.DB_ECHO,
    }

    # Use appropriate connection pool based on environment
    if settings.DEBUG:
        engine_args["poolclass"] = NullPool
    else:
        engine_args["pool_size"] = settings.DB_POOL_SIZE
        engine_args["max_overflow"] = settings.DB_MAX_OVERFLOW
        engine_args["poolclass"] = QueuePool

    return create_engine(database_url, **engine_args)


DATABASE_URL = build_database_url()

try:
    engine = create_db_engine(DATABASE_URL)
    logger.info(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
except Exception as e:
    logger.error(f"Failed to create database engine: {str(e)}")
    raise

# Create SessionLocal class
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False
)

# Create Base class for models
Base = declarative_base()


# Dependency to get DB session
def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency for FastAPI
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database session error: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


def test_connection() -> bool:
    """
    Test database connection
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            logger.info("Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"Database connection test failed: {str(e)}")
        return False


def init_db(bind: Engine = None):
    """
    Create all tables in the database
    """
    # Register every model on Base.metadata
    import app.models  # noqa: F401

    try:
        Base.metadata.create_all(bind=bind or engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create database tables: {str(e)}")
        raise
