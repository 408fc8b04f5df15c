"""
Async Postgres adapter: orders, order_items, shopper_jobs, disputes, payments.
Order writes are compare-and-swap on status (UPDATE ... WHERE status = expected) and touch only
the columns the operation changed. The dispute path locks the order row, inserts the dispute
and forces the order to disputed in one transaction.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

import asyncpg
from asyncpg.exceptions import (
    CannotConnectNowError,
    InterfaceError,
    PostgresConnectionError,
    TooManyConnectionsError,
    UniqueViolationError,
)

from market_orders.config import settings
from market_orders.errors import (
    NotFoundError,
    PaymentRequestError,
    PersistenceUnavailable,
    StaleStateError,
    TerminalState,
    stale_state,
)
from market_orders.order_state import (
    Dispute,
    InspectionStatus,
    JobStatus,
    Order,
    OrderStatus,
    Payment,
    ShopperJob,
)
from market_orders.store import STATUS_ONLY, check_fields

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None

_UNAVAILABLE = (
    OSError,
    asyncio.TimeoutError,
    InterfaceError,
    PostgresConnectionError,
    CannotConnectNowError,
    TooManyConnectionsError,
)


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        try:
            _pool = await asyncpg.create_pool(
                settings.database_url,
                min_size=1,
                max_size=5,
                command_timeout=60,
            )
        except _UNAVAILABLE as e:
            raise PersistenceUnavailable(f"cannot reach database: {e}") from e
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id UUID PRIMARY KEY,
                order_number VARCHAR(32) NOT NULL UNIQUE,
                status VARCHAR(20) NOT NULL DEFAULT 'pending',
                inspection_status VARCHAR(20) NOT NULL DEFAULT 'pending',
                proof_of_purchase_ref TEXT,
                all_items_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
                consumer_id VARCHAR(255) NOT NULL,
                vendor_id VARCHAR(255) NOT NULL,
                shopper_id VARCHAR(255),
                market_id VARCHAR(255),
                subtotal NUMERIC(12, 2) NOT NULL,
                shopper_fee NUMERIC(12, 2) NOT NULL,
                total NUMERIC(12, 2) NOT NULL,
                special_instructions TEXT,
                inspection_notes TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_items (
                id BIGSERIAL PRIMARY KEY,
                order_id UUID NOT NULL REFERENCES orders(id),
                product_id VARCHAR(255) NOT NULL,
                product_name TEXT NOT NULL,
                quantity INT NOT NULL CHECK (quantity > 0),
                unit_price NUMERIC(12, 2) NOT NULL CHECK (unit_price > 0)
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS shopper_jobs (
                id UUID PRIMARY KEY,
                order_id UUID NOT NULL UNIQUE REFERENCES orders(id),
                shopper_id VARCHAR(255),
                status VARCHAR(30) NOT NULL DEFAULT 'available',
                proof_url TEXT,
                commission_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                accepted_at TIMESTAMPTZ,
                picked_up_at TIMESTAMPTZ,
                delivered_at TIMESTAMPTZ
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS disputes (
                id UUID PRIMARY KEY,
                order_id UUID NOT NULL REFERENCES orders(id),
                reporter_id VARCHAR(255) NOT NULL,
                reported_user_id VARCHAR(255),
                category VARCHAR(30) NOT NULL,
                description TEXT NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'open',
                resolution TEXT,
                admin_notes TEXT,
                resolved_by VARCHAR(255),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS payments (
                id UUID PRIMARY KEY,
                order_id UUID NOT NULL REFERENCES orders(id),
                user_id VARCHAR(255) NOT NULL,
                amount NUMERIC(12, 2) NOT NULL,
                momo_phone VARCHAR(20) NOT NULL,
                momo_network VARCHAR(20) NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'pending',
                external_reference VARCHAR(64) NOT NULL UNIQUE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_shopper_jobs_available
            ON shopper_jobs(status) WHERE shopper_id IS NULL;
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_payments_order_id
            ON payments(order_id);
        """)
        await conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_payments_one_pending
            ON payments(order_id) WHERE status = 'pending';
        """)


def _key(kind: str, key: str) -> uuid.UUID:
    """Ids are UUID columns; anything else cannot name a stored row."""
    try:
        return uuid.UUID(str(key))
    except ValueError:
        raise NotFoundError(kind, key)


def _record(row: asyncpg.Record) -> dict:
    # UUID columns come back as uuid.UUID; the models carry ids as strings
    return {k: (str(v) if k in ("id", "order_id") and v is not None else v) for k, v in row.items()}


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @asynccontextmanager
    async def _connection(self):
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except _UNAVAILABLE as e:
            logger.warning("Database unavailable: %s", e)
            raise PersistenceUnavailable(f"database unavailable: {e}") from e

    async def _fetch_order(self, conn, order_id: uuid.UUID) -> Order:
        row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
        if row is None:
            raise NotFoundError("order", str(order_id))
        items = await conn.fetch(
            "SELECT product_id, product_name, quantity, unit_price FROM order_items WHERE order_id = $1 ORDER BY id;",
            order_id,
        )
        return Order.model_validate({**_record(row), "items": [dict(i) for i in items]})

    async def load_order(self, order_id: str) -> Order:
        key = _key("order", order_id)
        async with self._connection() as conn:
            return await self._fetch_order(conn, key)

    async def insert_order(self, order: Order, job: ShopperJob) -> Order:
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO orders (id, order_number, status, inspection_status, consumer_id, vendor_id,
                                        market_id, subtotal, shopper_fee, total, special_instructions,
                                        created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13);
                    """,
                    order.id,
                    order.order_number,
                    order.status.value,
                    order.inspection_status.value,
                    order.consumer_id,
                    order.vendor_id,
                    order.market_id,
                    order.subtotal,
                    order.shopper_fee,
                    order.total,
                    order.special_instructions,
                    order.created_at,
                    order.updated_at,
                )
                await conn.executemany(
                    """
                    INSERT INTO order_items (order_id, product_id, product_name, quantity, unit_price)
                    VALUES ($1, $2, $3, $4, $5);
                    """,
                    [(order.id, i.product_id, i.product_name, i.quantity, i.unit_price) for i in order.items],
                )
                await conn.execute(
                    """
                    INSERT INTO shopper_jobs (id, order_id, status, commission_amount, created_at)
                    VALUES ($1, $2, $3, $4, $5);
                    """,
                    job.id,
                    job.order_id,
                    job.status.value,
                    job.commission_amount,
                    job.created_at,
                )
        return order

    async def save_order(
        self, order: Order, expected_prior_status: OrderStatus, fields: tuple[str, ...] = STATUS_ONLY
    ) -> Order:
        """
        Conditional update: only applies if the stored status is still expected_prior_status,
        and only the named columns (plus updated_at) are written.
        """
        check_fields(fields)
        key = _key("order", order.id)
        values = [getattr(order, name) for name in fields]
        values = [v.value if isinstance(v, (OrderStatus, InspectionStatus)) else v for v in values]
        assignments = ", ".join(f"{name} = ${i}" for i, name in enumerate(fields, start=3))
        query = f"""
            UPDATE orders
            SET {assignments}, updated_at = ${len(fields) + 3}
            WHERE id = $1 AND status = $2
            RETURNING id;
        """
        async with self._connection() as conn:
            async with conn.transaction():
                updated = await conn.fetchval(query, key, expected_prior_status.value, *values, order.updated_at)
                if updated is None:
                    current = await conn.fetchval("SELECT status FROM orders WHERE id = $1;", key)
                    if current is None:
                        raise NotFoundError("order", order.id)
                    raise stale_state(current)
                return await self._fetch_order(conn, key)

    async def load_shopper_job(self, order_id: str) -> ShopperJob | None:
        try:
            key = _key("shopper job", order_id)
        except NotFoundError:
            return None
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM shopper_jobs WHERE order_id = $1;", key)
        return ShopperJob.model_validate(_record(row)) if row else None

    async def list_available_jobs(self) -> list[ShopperJob]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM shopper_jobs WHERE status = $1 AND shopper_id IS NULL ORDER BY created_at DESC;",
                JobStatus.AVAILABLE.value,
            )
        return [ShopperJob.model_validate(_record(r)) for r in rows]

    async def claim_shopper_job(self, order_id: str, shopper_id: str) -> ShopperJob:
        key = _key("shopper job", order_id)
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE shopper_jobs
                    SET shopper_id = $2, status = $3, accepted_at = NOW()
                    WHERE order_id = $1 AND shopper_id IS NULL AND status = $4
                    RETURNING *;
                    """,
                    key,
                    shopper_id,
                    JobStatus.ACCEPTED.value,
                    JobStatus.AVAILABLE.value,
                )
                if row is None:
                    exists = await conn.fetchval("SELECT 1 FROM shopper_jobs WHERE order_id = $1;", key)
                    if exists is None:
                        raise NotFoundError("shopper job", order_id)
                    raise StaleStateError("This job has already been taken by another shopper.")
                await conn.execute(
                    "UPDATE orders SET shopper_id = $2, updated_at = NOW() WHERE id = $1;",
                    key,
                    shopper_id,
                )
        return ShopperJob.model_validate(_record(row))

    async def save_shopper_job(self, job: ShopperJob) -> ShopperJob:
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE shopper_jobs
                SET status = $2, proof_url = $3, picked_up_at = $4, delivered_at = $5
                WHERE id = $1;
                """,
                job.id,
                job.status.value,
                job.proof_url,
                job.picked_up_at,
                job.delivered_at,
            )
        return job

    async def create_dispute(self, dispute: Dispute) -> tuple[Order, OrderStatus]:
        key = _key("order", dispute.order_id)
        async with self._connection() as conn:
            async with conn.transaction():
                prior = await conn.fetchval("SELECT status FROM orders WHERE id = $1 FOR UPDATE;", key)
                if prior is None:
                    raise NotFoundError("order", dispute.order_id)
                if prior == OrderStatus.CANCELLED.value:
                    raise TerminalState("A cancelled order cannot be disputed.", current_status=prior)
                await conn.execute(
                    """
                    INSERT INTO disputes (id, order_id, reporter_id, reported_user_id, category, description,
                                          status, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9);
                    """,
                    dispute.id,
                    key,
                    dispute.reporter_id,
                    dispute.reported_user_id,
                    dispute.category.value,
                    dispute.description,
                    dispute.status.value,
                    dispute.created_at,
                    dispute.updated_at,
                )
                await conn.execute(
                    "UPDATE orders SET status = $2, updated_at = NOW() WHERE id = $1;",
                    key,
                    OrderStatus.DISPUTED.value,
                )
                order = await self._fetch_order(conn, key)
        return order, OrderStatus(prior)

    async def load_dispute(self, dispute_id: str) -> Dispute:
        key = _key("dispute", dispute_id)
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM disputes WHERE id = $1;", key)
        if row is None:
            raise NotFoundError("dispute", dispute_id)
        return Dispute.model_validate(_record(row))

    async def save_dispute(self, dispute: Dispute) -> Dispute:
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE disputes
                SET status = $2, resolution = $3, admin_notes = $4, resolved_by = $5, updated_at = $6
                WHERE id = $1;
                """,
                dispute.id,
                dispute.status.value,
                dispute.resolution,
                dispute.admin_notes,
                dispute.resolved_by,
                dispute.updated_at,
            )
        return dispute

    async def create_payment(self, payment: Payment) -> Payment:
        """Insert a pending payment. uq_payments_one_pending allows one pending payment per order."""
        async with self._connection() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO payments (id, order_id, user_id, amount, momo_phone, momo_network, status,
                                          external_reference, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10);
                    """,
                    payment.id,
                    payment.order_id,
                    payment.user_id,
                    payment.amount,
                    payment.momo_phone,
                    payment.momo_network,
                    payment.status.value,
                    payment.external_reference,
                    payment.created_at,
                    payment.updated_at,
                )
            except UniqueViolationError as e:
                if e.constraint_name != "uq_payments_one_pending":
                    raise
                raise PaymentRequestError("A payment is already pending for this order.") from e
        return payment

    async def load_payment(self, payment_id: str) -> Payment:
        key = _key("payment", payment_id)
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM payments WHERE id = $1;", key)
        if row is None:
            raise NotFoundError("payment", payment_id)
        return Payment.model_validate(_record(row))

    async def save_payment(self, payment: Payment) -> Payment:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE payments SET status = $2, updated_at = $3 WHERE id = $1;",
                payment.id,
                payment.status.value,
                payment.updated_at,
            )
        return payment
