"""
============================================================================
Payment Store - Row Access for prompts, purchases, payment_preparations
============================================================================

Reliability Level: L6 Critical (money movement)
Input Constraints: A SQLAlchemy session per request
Side Effects: Database reads/writes (callers own commit/rollback)

The payment handlers never touch the database directly. They receive a
PaymentStore, which makes the relational store replaceable in tests and
keeps every multi-statement guarantee in one place:

    - insert_preparation() is a single conditional INSERT ... SELECT that
      only inserts when no purchase exists for (user_id, prompt_id)
    - transition_preparation() is a conditional UPDATE ... WHERE
      status = <expected>, so concurrent settlements cannot both win
    - get_prepared_by_order_id(lock=True) takes a row lock where the
      backend supports SELECT ... FOR UPDATE

Write methods do not commit. Callers commit or roll back through the store
so that a settlement and its purchase row land in one transaction.

ERROR CODES:
    - PAY-STORE-001: Store operation failed
    - PAY-STORE-002: Duplicate order id
    - PAY-STORE-003: Duplicate purchase

============================================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from sqlalchemy import and_, insert, literal, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.database.models import PaymentPreparation, Prompt, Purchase
from services.payment_models import (
    CatalogItem,
    PreparationRecord,
    PreparationStatus,
    PurchaseRecord,
    ensure_utc,
    utc_now,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class StoreError(Exception):
    """Raised when the relational store fails (PAY-STORE-001)."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"PAY-STORE-001: {operation} failed: {message}")


class DuplicateOrderError(StoreError):
    """Raised when a preparation already exists for an order id (PAY-STORE-002)."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("insert_preparation", f"order_id already prepared: {order_id}")


class DuplicatePurchaseError(StoreError):
    """Raised when a purchase already exists for (user_id, prompt_id) (PAY-STORE-003)."""

    def __init__(self, user_id: str, prompt_id: str):
        self.user_id = user_id
        self.prompt_id = prompt_id
        super().__init__(
            "insert_purchase",
            f"purchase already exists | user_id={user_id} | prompt_id={prompt_id}"
        )


# =============================================================================
# Store Interface
# =============================================================================

class PaymentStore(ABC):
    """Capability interface over the three tables the handshake touches."""

    @abstractmethod
    def get_catalog_item(self, item_id: str) -> Optional[CatalogItem]:
        ...

    @abstractmethod
    def find_purchase(self, user_id: str, item_id: str) -> Optional[PurchaseRecord]:
        ...

    @abstractmethod
    def insert_preparation(self, record: PreparationRecord) -> bool:
        """
        Insert a prepared record unless a purchase exists for its
        (user_id, prompt_id).

        Returns:
            True if the row was inserted, False if a purchase blocked it

        Raises:
            DuplicateOrderError: If the order id is already in the ledger
            StoreError: On any other store failure
        """

    @abstractmethod
    def get_prepared_by_order_id(
        self, order_id: str, lock: bool = False
    ) -> Optional[PreparationRecord]:
        ...

    @abstractmethod
    def get_preparation_by_order_id(self, order_id: str) -> Optional[PreparationRecord]:
        ...

    @abstractmethod
    def transition_preparation(
        self,
        preparation_id: str,
        expected_status: str,
        target_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a record from expected_status to target_status.

        Returns:
            True if exactly one row changed, False if the record was no
            longer in expected_status
        """

    @abstractmethod
    def insert_purchase(self, purchase: PurchaseRecord) -> None:
        ...

    @abstractmethod
    def list_expired_preparations(self, now: datetime, limit: int = 100) -> List[PreparationRecord]:
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


# =============================================================================
# SQLAlchemy Implementation
# =============================================================================

class SQLPaymentStore(PaymentStore):
    """
    PaymentStore backed by a SQLAlchemy session.

    Example Usage:
        store = SQLPaymentStore(db)
        item = store.get_catalog_item("p1")
    """

    def __init__(self, session: Session):
        self._session = session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_catalog_item(self, item_id: str) -> Optional[CatalogItem]:
        try:
            row = self._session.query(Prompt).filter(Prompt.id == item_id).first()
        except SQLAlchemyError as e:
            raise StoreError("get_catalog_item", str(e))

        if row is None:
            return None

        return CatalogItem(
            id=row.id,
            title=row.title,
            price=row.price,
            is_free=bool(row.is_free),
            status=row.status,
        )

    def find_purchase(self, user_id: str, item_id: str) -> Optional[PurchaseRecord]:
        try:
            row = (
                self._session.query(Purchase)
                .filter(Purchase.user_id == user_id, Purchase.prompt_id == item_id)
                .order_by(Purchase.created_at.asc())
                .first()
            )
        except SQLAlchemyError as e:
            raise StoreError("find_purchase", str(e))

        if row is None:
            return None

        return _purchase_from_row(row)

    def get_prepared_by_order_id(
        self, order_id: str, lock: bool = False
    ) -> Optional[PreparationRecord]:
        try:
            query = self._session.query(PaymentPreparation).filter(
                PaymentPreparation.order_id == order_id,
                PaymentPreparation.status == PreparationStatus.PREPARED.value,
            )
            if lock:
                query = query.with_for_update()
            row = query.first()
        except SQLAlchemyError as e:
            raise StoreError("get_prepared_by_order_id", str(e))

        return _preparation_from_row(row) if row is not None else None

    def get_preparation_by_order_id(self, order_id: str) -> Optional[PreparationRecord]:
        try:
            row = (
                self._session.query(PaymentPreparation)
                .filter(PaymentPreparation.order_id == order_id)
                .first()
            )
        except SQLAlchemyError as e:
            raise StoreError("get_preparation_by_order_id", str(e))

        return _preparation_from_row(row) if row is not None else None

    def list_expired_preparations(self, now: datetime, limit: int = 100) -> List[PreparationRecord]:
        try:
            rows = (
                self._session.query(PaymentPreparation)
                .filter(
                    PaymentPreparation.status == PreparationStatus.PREPARED.value,
                    PaymentPreparation.expires_at < now,
                )
                .order_by(PaymentPreparation.expires_at.asc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreError("list_expired_preparations", str(e))

        return [_preparation_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_preparation(self, record: PreparationRecord) -> bool:
        preparations = PaymentPreparation.__table__
        purchases = Purchase.__table__

        values = {
            "id": record.id,
            "order_id": record.order_id,
            "user_id": record.user_id,
            "prompt_id": record.prompt_id,
            "amount": record.amount,
            "order_name": record.order_name,
            "status": record.status,
            "expires_at": record.expires_at,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }
        columns = list(values.keys())

        purchase_exists = select(purchases.c.id).where(
            and_(
                purchases.c.user_id == record.user_id,
                purchases.c.prompt_id == record.prompt_id,
            )
        ).exists()

        source = select(
            *[literal(values[name], preparations.c[name].type) for name in columns]
        ).where(~purchase_exists)

        statement = insert(preparations).from_select(columns, source)

        try:
            result = self._session.execute(statement)
        except IntegrityError as e:
            self._session.rollback()
            if self._order_id_exists(record.order_id):
                raise DuplicateOrderError(record.order_id)
            raise StoreError("insert_preparation", str(e))
        except SQLAlchemyError as e:
            raise StoreError("insert_preparation", str(e))

        return result.rowcount == 1

    def transition_preparation(
        self,
        preparation_id: str,
        expected_status: str,
        target_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        preparations = PaymentPreparation.__table__

        values = dict(fields or {})
        values["status"] = target_status
        values["updated_at"] = utc_now()

        statement = (
            update(preparations)
            .where(
                and_(
                    preparations.c.id == preparation_id,
                    preparations.c.status == expected_status,
                )
            )
            .values(**values)
        )

        try:
            result = self._session.execute(statement)
        except SQLAlchemyError as e:
            raise StoreError("transition_preparation", str(e))

        return result.rowcount == 1

    def insert_purchase(self, purchase: PurchaseRecord) -> None:
        self._session.add(
            Purchase(
                id=purchase.id,
                user_id=purchase.user_id,
                prompt_id=purchase.prompt_id,
                price=purchase.price,
                order_id=purchase.order_id,
                payment_method=purchase.payment_method,
                transaction_id=purchase.transaction_id,
                created_at=purchase.created_at,
            )
        )
        try:
            self._session.flush()
        except IntegrityError:
            raise DuplicatePurchaseError(purchase.user_id, purchase.prompt_id)
        except SQLAlchemyError as e:
            raise StoreError("insert_purchase", str(e))

    def commit(self) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError as e:
            self._session.rollback()
            raise StoreError("commit", str(e))

    def rollback(self) -> None:
        try:
            self._session.rollback()
        except SQLAlchemyError as e:
            raise StoreError("rollback", str(e))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _order_id_exists(self, order_id: str) -> bool:
        try:
            return (
                self._session.query(PaymentPreparation.id)
                .filter(PaymentPreparation.order_id == order_id)
                .first()
                is not None
            )
        except SQLAlchemyError as e:
            raise StoreError("insert_preparation", str(e))


# =============================================================================
# Row Converters
# =============================================================================

def _preparation_from_row(row: PaymentPreparation) -> PreparationRecord:
    return PreparationRecord(
        id=row.id,
        order_id=row.order_id,
        user_id=row.user_id,
        prompt_id=row.prompt_id,
        amount=row.amount,
        order_name=row.order_name,
        status=row.status,
        expires_at=ensure_utc(row.expires_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        payment_key=row.payment_key,
        payment_method=row.payment_method,
        approved_at=ensure_utc(row.approved_at),
        failure_reason=row.failure_reason,
    )


def _purchase_from_row(row: Purchase) -> PurchaseRecord:
    return PurchaseRecord(
        id=row.id,
        user_id=row.user_id,
        prompt_id=row.prompt_id,
        price=row.price,
        created_at=ensure_utc(row.created_at),
        order_id=row.order_id,
        payment_method=row.payment_method,
        transaction_id=row.transaction_id,
    )


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "StoreError",
    "DuplicateOrderError",
    "DuplicatePurchaseError",
    "PaymentStore",
    "SQLPaymentStore",
]
