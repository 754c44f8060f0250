"""
============================================================================
Prompt Market Payments
Database Session - Engine, Session Factory, Request Sessions
============================================================================

Reliability Level: L6 Critical
Input Constraints: DATABASE_URL or DB_* environment variables
Side Effects: Opens pooled connections to the payments database

MANDATE:
- One session per request, rolled back on exception
- All timestamps stored in UTC
- Connection pooling for PostgreSQL; SQLite is supported for local runs

============================================================================
"""

import os
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    Construct the database URL from environment variables.

    DATABASE_URL wins when set. Otherwise a PostgreSQL URL is assembled from:
        DB_HOST: Database host (default: localhost)
        DB_PORT: Database port (default: 5432)
        DB_NAME: Database name (default: prompt_market)
        DB_USER: Database user (default: prompt_market_app)
        DB_PASSWORD: Database password
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "prompt_market")
    user = os.getenv("DB_USER", "prompt_market_app")
    password = os.getenv("DB_PASSWORD", "")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def create_database_engine(url: str):
    """
    Create an engine for the given URL.

    SQLite gets a StaticPool so an in-memory database is shared across
    sessions; everything else gets a QueuePool.
    """
    echo = os.getenv("DB_ECHO", "false").lower() == "true"

    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )

    # FOR UPDATE plus conditional updates rely on READ COMMITTED
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "10")),
        pool_recycle=900,
        pool_pre_ping=True,
        echo=echo,
        isolation_level="READ COMMITTED",
    )


# ============================================================================
# SQLALCHEMY ENGINE
# ============================================================================

DATABASE_URL = get_database_url()

engine = create_database_engine(DATABASE_URL)


# ============================================================================
# SESSION FACTORY
# ============================================================================

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


# ============================================================================
# DEPENDENCY INJECTION
# ============================================================================

def get_db() -> Generator[Session, None, None]:
    """
    Request-scoped session for the payment routes.

    Yields:
        Session bound to the shared engine

    Usage:
        @router.post("/prepare-payment")
        async def prepare_payment(db: Session = Depends(get_db)):
            ...

    MANDATE:
        - Closed once the response is sent
        - Rolled back if the route raises
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ============================================================================
# CONNECTION EVENT LISTENERS
# ============================================================================

if engine.dialect.name == "postgresql":

    @event.listens_for(engine, "connect")
    def set_timezone(dbapi_connection, connection_record):
        """Ensure all connections use UTC timezone."""
        cursor = dbapi_connection.cursor()
        cursor.execute("SET timezone TO 'UTC'")
        cursor.close()


# ============================================================================
# SCHEMA & HEALTH CHECK
# ============================================================================

def init_database(bind=None) -> None:
    """
    Create the payment tables if they don't exist.

    Only called on startup when DB_AUTO_CREATE=true; managed deployments own
    their schema.
    """
    from app.database.models import Base

    Base.metadata.create_all(bind=bind or engine)


def check_database_connection() -> bool:
    """
    Ping the database with SELECT 1.

    Returns:
        True when the ping succeeds

    Raises:
        Exception: wrapping the driver error when the ping fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise Exception(f"Database connection failed: {e}")


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
