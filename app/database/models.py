"""
============================================================================
Prompt Market Payments
Database Models - prompts, purchases, payment_preparations
============================================================================

The prompts and purchases tables are owned by the marketplace; only the
columns the payment handshake reads or writes are mapped here.

============================================================================
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

# Base class for declarative ORM models.
Base = declarative_base()


class Prompt(Base):
    """Catalog item. Read-only to the payment handshake."""

    __tablename__ = "prompts"

    id = Column(String(36), primary_key=True)
    title = Column(String, nullable=False)
    price = Column(Integer, nullable=False, default=0)
    is_free = Column(Boolean, nullable=False, default=False)
    status = Column(String(16), nullable=False, default="pending")  # pending | approved | rejected


class Purchase(Base):
    """Proof of ownership. One row per (user_id, prompt_id)."""

    __tablename__ = "purchases"
    __table_args__ = (
        UniqueConstraint("user_id", "prompt_id", name="uq_purchases_user_prompt"),
    )

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    prompt_id = Column(String(36), ForeignKey("prompts.id"), nullable=False)
    price = Column(Integer, nullable=False)
    order_id = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)  # gateway paymentKey
    created_at = Column(DateTime(timezone=True), nullable=False)


class PaymentPreparation(Base):
    """Payment ledger row created by prepare, settled by confirm."""

    __tablename__ = "payment_preparations"
    __table_args__ = (
        Index("ix_payment_preparations_status_expires", "status", "expires_at"),
    )

    id = Column(String(36), primary_key=True)
    order_id = Column(String, nullable=False, unique=True)
    user_id = Column(String(36), nullable=False, index=True)
    prompt_id = Column(String(36), ForeignKey("prompts.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    order_name = Column(String, nullable=False)
    status = Column(String(16), nullable=False, default="prepared")  # prepared | confirmed | failed
    payment_key = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
