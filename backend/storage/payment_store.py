"""
Payment Store - Persistence Interface
=====================================
Durable home of `Payment` records.

- IPaymentStore: the contract the session manager and reaper depend on
- PostgresPaymentStore: asyncpg-backed, row locks via SELECT ... FOR UPDATE
- InMemoryPaymentStore: dev/test store with the same transactional shape

Audit stamps (created_by / updated_by) are filled in here from the ambient
principal, never by callers.

pip install asyncpg structlog pydantic
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional

import asyncpg
import structlog

from database import Database
from exceptions import DuplicateTransactionError, InvalidPaymentRequestError, PaymentNotFoundError
from schemas.payment_definitions import Payment, PaymentStatus
from storage.auditing import resolve_auditor

logger = structlog.get_logger().bind(component="payment_store")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentStore(ABC):
    """Abstract payment store (swap Postgres / in-memory without code changes)"""

    backend_name: str = "abstract"

    @abstractmethod
    def transaction(self):
        """
        Async context manager yielding a store bound to one transaction.

        Leaving the block normally commits; an exception rolls back and
        propagates. Calling transaction() on an already-bound store joins
        the open transaction.
        """

    @abstractmethod
    async def insert(self, payment: Payment) -> Payment:
        """Assign id and audit stamps, persist, return the stored copy."""

    @abstractmethod
    async def find_by_id(self, payment_id: int, for_update: bool = False) -> Optional[Payment]:
        pass

    @abstractmethod
    async def find_by_transaction_id(self, transaction_id: str, for_update: bool = False) -> Optional[Payment]:
        pass

    @abstractmethod
    async def find_by_booking_id(self, booking_id: int) -> Optional[Payment]:
        """Most recent attempt for the booking."""

    @abstractmethod
    async def find_by_status(self, status: PaymentStatus) -> List[Payment]:
        """Finite snapshot of every record in `status`, oldest first."""

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """Full replacement of the record with `payment.id`."""


def _require_positive_amount(payment: Payment):
    if payment.amount is None or payment.amount <= 0:
        raise InvalidPaymentRequestError("Amount must be greater than zero")


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

_SELECT = "SELECT * FROM payments"


class PostgresPaymentStore(IPaymentStore):
    """asyncpg-backed store over the shared `Database` pool"""

    backend_name = "postgres"

    def __init__(self, connection: Optional[asyncpg.Connection] = None, clock: Clock = utc_now):
        self._conn = connection
        self._clock = clock

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        if self._conn is not None:
            yield self._conn
        else:
            async with Database.acquire() as conn:
                yield conn

    @asynccontextmanager
    async def transaction(self):
        if self._conn is not None:
            yield self
            return

        async with Database.acquire() as conn:
            async with conn.transaction():
                yield PostgresPaymentStore(connection=conn, clock=self._clock)

    async def insert(self, payment: Payment) -> Payment:
        _require_positive_amount(payment)
        now = self._clock()
        auditor = resolve_auditor()

        try:
            async with self._connection() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO payments
                    (booking_id, user_id, amount, currency, payment_method, transaction_id,
                     payment_intent_id, payment_status, payment_gateway_response,
                     created_at, updated_at, created_by, updated_by)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $10, $11, $11)
                    RETURNING *
                    """,
                    payment.booking_id,
                    payment.user_id,
                    payment.amount,
                    payment.currency,
                    payment.payment_method,
                    payment.transaction_id,
                    payment.payment_intent_id,
                    payment.status.value,
                    payment.gateway_response,
                    now,
                    auditor,
                )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateTransactionError(
                f"Payment with transaction id {payment.transaction_id} already exists"
            ) from e

        return Payment.from_record(row)

    async def find_by_id(self, payment_id: int, for_update: bool = False) -> Optional[Payment]:
        return await self._fetch_one(f"{_SELECT} WHERE id = $1", payment_id, for_update=for_update)

    async def find_by_transaction_id(self, transaction_id: str, for_update: bool = False) -> Optional[Payment]:
        return await self._fetch_one(
            f"{_SELECT} WHERE transaction_id = $1", transaction_id, for_update=for_update
        )

    async def find_by_booking_id(self, booking_id: int) -> Optional[Payment]:
        return await self._fetch_one(
            f"{_SELECT} WHERE booking_id = $1 ORDER BY created_at DESC, id DESC LIMIT 1", booking_id
        )

    async def find_by_status(self, status: PaymentStatus) -> List[Payment]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"{_SELECT} WHERE payment_status = $1 ORDER BY created_at, id", status.value
            )
        return [Payment.from_record(row) for row in rows]

    async def update(self, payment: Payment) -> Payment:
        _require_positive_amount(payment)

        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE payments
                SET booking_id = $1, user_id = $2, amount = $3, currency = $4,
                    payment_method = $5, transaction_id = $6, payment_intent_id = $7,
                    payment_status = $8, payment_gateway_response = $9,
                    updated_at = $10, updated_by = $11
                WHERE id = $12
                RETURNING *
                """,
                payment.booking_id,
                payment.user_id,
                payment.amount,
                payment.currency,
                payment.payment_method,
                payment.transaction_id,
                payment.payment_intent_id,
                payment.status.value,
                payment.gateway_response,
                self._clock(),
                resolve_auditor(),
                payment.id,
            )

        if row is None:
            raise PaymentNotFoundError(f"Payment not found with id: {payment.id}")
        return Payment.from_record(row)

    async def _fetch_one(self, query: str, *args, for_update: bool = False) -> Optional[Payment]:
        if for_update:
            query = f"{query} FOR UPDATE"
        async with self._connection() as conn:
            row = await conn.fetchrow(query, *args)
        return Payment.from_record(row) if row else None


# =============================================================================
# IN-MEMORY IMPLEMENTATION (dev / tests)
# =============================================================================

class InMemoryPaymentStore(IPaymentStore):
    """
    Process-local store.

    Transactions are serialized by one lock, which stands in for the row
    lock; a failed transaction restores the snapshot taken on entry.
    Reads outside a transaction never block.
    """

    backend_name = "memory"

    def __init__(self, clock: Clock = utc_now):
        self._rows: Dict[int, Payment] = {}
        self._next_id = 1
        self._clock = clock
        self._tx_lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self):
        async with self._tx_lock:
            async with self._snapshot():
                yield _InMemoryTransaction(self)

    @asynccontextmanager
    async def _snapshot(self):
        rows = dict(self._rows)
        next_id = self._next_id
        try:
            yield
        except BaseException:
            self._rows = rows
            self._next_id = next_id
            logger.debug("In-memory transaction rolled back")
            raise

    async def insert(self, payment: Payment) -> Payment:
        async with self._tx_lock:
            return self._insert(payment)

    async def update(self, payment: Payment) -> Payment:
        async with self._tx_lock:
            return self._update(payment)

    async def find_by_id(self, payment_id: int, for_update: bool = False) -> Optional[Payment]:
        return self._copy(self._rows.get(payment_id))

    async def find_by_transaction_id(self, transaction_id: str, for_update: bool = False) -> Optional[Payment]:
        for payment in self._rows.values():
            if transaction_id is not None and payment.transaction_id == transaction_id:
                return self._copy(payment)
        return None

    async def find_by_booking_id(self, booking_id: int) -> Optional[Payment]:
        matches = [p for p in self._rows.values() if p.booking_id == booking_id]
        if not matches:
            return None
        return self._copy(max(matches, key=lambda p: (p.created_at, p.id)))

    async def find_by_status(self, status: PaymentStatus) -> List[Payment]:
        return [self._copy(p) for p in sorted(self._rows.values(), key=lambda p: p.id) if p.status == status]

    def _insert(self, payment: Payment) -> Payment:
        _require_positive_amount(payment)

        if payment.transaction_id is not None and any(
            p.transaction_id == payment.transaction_id for p in self._rows.values()
        ):
            raise DuplicateTransactionError(
                f"Payment with transaction id {payment.transaction_id} already exists"
            )

        now = self._clock()
        auditor = resolve_auditor()
        stored = payment.model_copy(update={
            "id": self._next_id,
            "created_at": now,
            "updated_at": now,
            "created_by": auditor,
            "updated_by": auditor,
        })
        self._rows[stored.id] = stored
        self._next_id += 1
        return self._copy(stored)

    def _update(self, payment: Payment) -> Payment:
        _require_positive_amount(payment)

        existing = self._rows.get(payment.id)
        if existing is None:
            raise PaymentNotFoundError(f"Payment not found with id: {payment.id}")

        if payment.transaction_id is not None and any(
            p.transaction_id == payment.transaction_id and p.id != payment.id for p in self._rows.values()
        ):
            raise DuplicateTransactionError(
                f"Payment with transaction id {payment.transaction_id} already exists"
            )

        stored = payment.model_copy(update={
            "created_at": existing.created_at,
            "created_by": existing.created_by,
            "updated_at": self._clock(),
            "updated_by": resolve_auditor(),
        })
        self._rows[stored.id] = stored
        return self._copy(stored)

    @staticmethod
    def _copy(payment: Optional[Payment]) -> Optional[Payment]:
        return payment.model_copy() if payment is not None else None


class _InMemoryTransaction(IPaymentStore):
    """View of an InMemoryPaymentStore inside an open transaction"""

    def __init__(self, store: InMemoryPaymentStore):
        self._store = store
        self.backend_name = store.backend_name

    @asynccontextmanager
    async def transaction(self):
        yield self

    async def insert(self, payment: Payment) -> Payment:
        return self._store._insert(payment)

    async def update(self, payment: Payment) -> Payment:
        return self._store._update(payment)

    async def find_by_id(self, payment_id: int, for_update: bool = False) -> Optional[Payment]:
        return await self._store.find_by_id(payment_id)

    async def find_by_transaction_id(self, transaction_id: str, for_update: bool = False) -> Optional[Payment]:
        return await self._store.find_by_transaction_id(transaction_id)

    async def find_by_booking_id(self, booking_id: int) -> Optional[Payment]:
        return await self._store.find_by_booking_id(booking_id)

    async def find_by_status(self, status: PaymentStatus) -> List[Payment]:
        return await self._store.find_by_status(status)


# =============================================================================
# FACTORY
# =============================================================================

def create_payment_store(backend: str, clock: Clock = utc_now) -> IPaymentStore:
    """Build the store named by PAYMENT_STORE ("postgres" or "memory")."""
    backend = (backend or "").strip().lower()
    if backend == "memory":
        return InMemoryPaymentStore(clock=clock)
    if backend == "postgres":
        return PostgresPaymentStore(clock=clock)
    raise ValueError(f"Unknown payment store backend: {backend!r}")
