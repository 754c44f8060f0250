# ============================================================================
# Prompt Market Payments
# Database Module - SQLAlchemy Session Management
# ============================================================================

from app.database.session import get_db, engine, SessionLocal, init_database

__all__ = ["get_db", "engine", "SessionLocal", "init_database"]
