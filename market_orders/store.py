"""
Persistence adapter contract plus an in-memory implementation (tests, local runs with
STORE_BACKEND=memory). save_order is a compare-and-swap on the order status and writes
only the columns the caller names, so edits made at the same status never undo each other.
"""
from typing import Protocol

from market_orders.errors import NotFoundError, PaymentRequestError, StaleStateError, TerminalState, stale_state
from market_orders.order_state import (
    Dispute,
    JobStatus,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    ShopperJob,
    utcnow,
)


# Order columns save_order may write. Money, items and shopper_id are fixed elsewhere.
WRITABLE_FIELDS = frozenset({
    "status",
    "inspection_status",
    "proof_of_purchase_ref",
    "all_items_confirmed",
    "inspection_notes",
})

STATUS_ONLY = ("status",)


def check_fields(fields: tuple[str, ...]) -> None:
    unknown = set(fields) - WRITABLE_FIELDS
    if not fields or unknown:
        raise ValueError(f"save_order cannot write {sorted(unknown) or fields}")


class OrderStore(Protocol):
    async def load_order(self, order_id: str) -> Order: ...

    async def insert_order(self, order: Order, job: ShopperJob) -> Order: ...

    async def save_order(
        self, order: Order, expected_prior_status: OrderStatus, fields: tuple[str, ...] = STATUS_ONLY
    ) -> Order: ...

    async def load_shopper_job(self, order_id: str) -> ShopperJob | None: ...

    async def list_available_jobs(self) -> list[ShopperJob]: ...

    async def claim_shopper_job(self, order_id: str, shopper_id: str) -> ShopperJob: ...

    async def save_shopper_job(self, job: ShopperJob) -> ShopperJob: ...

    async def create_dispute(self, dispute: Dispute) -> tuple[Order, OrderStatus]: ...

    async def load_dispute(self, dispute_id: str) -> Dispute: ...

    async def save_dispute(self, dispute: Dispute) -> Dispute: ...

    async def create_payment(self, payment: Payment) -> Payment: ...

    async def load_payment(self, payment_id: str) -> Payment: ...

    async def save_payment(self, payment: Payment) -> Payment: ...


class InMemoryOrderStore:
    """Dict-backed store. Returns copies so callers never share state with the store."""

    def __init__(self) -> None:
        self.orders: dict[str, Order] = {}
        self.jobs: dict[str, ShopperJob] = {}  # keyed by order_id
        self.disputes: dict[str, Dispute] = {}
        self.payments: dict[str, Payment] = {}

    async def load_order(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        return order.model_copy(deep=True)

    async def insert_order(self, order: Order, job: ShopperJob) -> Order:
        self.orders[order.id] = order.model_copy(deep=True)
        self.jobs[order.id] = job.model_copy(deep=True)
        return order

    async def save_order(
        self, order: Order, expected_prior_status: OrderStatus, fields: tuple[str, ...] = STATUS_ONLY
    ) -> Order:
        check_fields(fields)
        stored = self.orders.get(order.id)
        if stored is None:
            raise NotFoundError("order", order.id)
        if stored.status != expected_prior_status:
            raise stale_state(stored.status.value)
        update = {name: getattr(order, name) for name in fields}
        update["updated_at"] = order.updated_at
        self.orders[order.id] = stored.model_copy(update=update)
        return self.orders[order.id].model_copy(deep=True)

    async def load_shopper_job(self, order_id: str) -> ShopperJob | None:
        job = self.jobs.get(order_id)
        return job.model_copy(deep=True) if job else None

    async def list_available_jobs(self) -> list[ShopperJob]:
        return [
            job.model_copy(deep=True)
            for job in self.jobs.values()
            if job.status == JobStatus.AVAILABLE and job.shopper_id is None
        ]

    async def claim_shopper_job(self, order_id: str, shopper_id: str) -> ShopperJob:
        job = self.jobs.get(order_id)
        if job is None:
            raise NotFoundError("shopper job", order_id)
        if job.shopper_id is not None or job.status != JobStatus.AVAILABLE:
            raise StaleStateError("This job has already been taken by another shopper.")
        now = utcnow()
        job.shopper_id = shopper_id
        job.status = JobStatus.ACCEPTED
        job.accepted_at = now
        order = self.orders[order_id]
        order.shopper_id = shopper_id
        order.updated_at = now
        return job.model_copy(deep=True)

    async def save_shopper_job(self, job: ShopperJob) -> ShopperJob:
        self.jobs[job.order_id] = job.model_copy(deep=True)
        return job

    async def create_dispute(self, dispute: Dispute) -> tuple[Order, OrderStatus]:
        order = self.orders.get(dispute.order_id)
        if order is None:
            raise NotFoundError("order", dispute.order_id)
        if order.status == OrderStatus.CANCELLED:
            raise TerminalState("A cancelled order cannot be disputed.", current_status=order.status.value)
        prior = order.status
        self.disputes[dispute.id] = dispute.model_copy(deep=True)
        order.apply_transition(OrderStatus.DISPUTED)
        return order.model_copy(deep=True), prior

    async def load_dispute(self, dispute_id: str) -> Dispute:
        dispute = self.disputes.get(dispute_id)
        if dispute is None:
            raise NotFoundError("dispute", dispute_id)
        return dispute.model_copy(deep=True)

    async def save_dispute(self, dispute: Dispute) -> Dispute:
        self.disputes[dispute.id] = dispute.model_copy(deep=True)
        return dispute

    async def create_payment(self, payment: Payment) -> Payment:
        """Insert a pending payment. At most one pending payment per order."""
        for existing in self.payments.values():
            if existing.order_id == payment.order_id and existing.status == PaymentStatus.PENDING:
                raise PaymentRequestError("A payment is already pending for this order.")
        self.payments[payment.id] = payment.model_copy(deep=True)
        return payment

    async def load_payment(self, payment_id: str) -> Payment:
        payment = self.payments.get(payment_id)
        if payment is None:
            raise NotFoundError("payment", payment_id)
        return payment.model_copy(deep=True)

    async def save_payment(self, payment: Payment) -> Payment:
        self.payments[payment.id] = payment.model_copy(deep=True)
        return payment
