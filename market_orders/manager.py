"""
OrderLifecycleManager: loads an order, asks TransitionPolicy, saves with the observed status
as the concurrency token, then publishes OrderTransitioned. A rejected or stale request
never reaches the store, and a stale write leaves the stored order as the winner left it.
"""
import logging
from contextlib import contextmanager
from typing import Awaitable, Callable

from market_orders.config import settings
from market_orders.errors import (
    InvalidActorForTransition,
    PersistenceUnavailable,
    PreconditionNotMet,
    TransitionError,
)
from market_orders.metrics import (
    admin_overrides_total,
    disputes_opened_total,
    order_transitions_rejected_total,
    order_transitions_total,
    payments_confirmed_total,
    payments_initiated_total,
)
from market_orders.order_state import (
    TERMINAL_STATUSES,
    Actor,
    Dispute,
    DisputeCategory,
    DisputeStatus,
    JobStatus,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Role,
    ShopperJob,
    build_order,
    utcnow,
)
from market_orders.payment_gate import blocking_reason, can_pay
from market_orders.payments import build_payment, validate_payment_request
from market_orders.policy import TransitionPolicy, TransitionResult, acts_as, policy as default_policy
from market_orders.redis_client import OrderTransitioned, check_idempotency, publish_event, release_idempotency
from market_orders.store import OrderStore

logger = logging.getLogger(__name__)

Publisher = Callable[[OrderTransitioned], Awaitable[None]]

# Shopper job status that follows each order status
_JOB_STATUS_FOR = {
    OrderStatus.PICKED_UP: JobStatus.IN_PROGRESS,
    OrderStatus.INSPECTING: JobStatus.READY_FOR_DELIVERY,
    OrderStatus.COMPLETED: JobStatus.COMPLETED,
}


@contextmanager
def _track_rejections(order_id: str):
    try:
        yield
    except TransitionError as e:
        order_transitions_rejected_total.labels(reason=e.reason).inc()
        logger.info("Rejected request on order_id=%s reason=%s: %s", order_id, e.reason, e.message)
        raise


class OrderLifecycleManager:
    def __init__(
        self,
        store: OrderStore,
        publisher: Publisher = publish_event,
        transition_policy: TransitionPolicy = default_policy,
        shopper_fee_rate=None,
        seen_before: Callable[[str], Awaitable[bool]] = check_idempotency,
        forget: Callable[[str], Awaitable[None]] = release_idempotency,
    ):
        self.store = store
        self.publisher = publisher
        self.policy = transition_policy
        self.shopper_fee_rate = shopper_fee_rate if shopper_fee_rate is not None else settings.shopper_fee_rate
        self.seen_before = seen_before
        self.forget = forget

    # --- orders ---

    async def create_order(
        self,
        actor: Actor,
        vendor_id: str,
        items: list[OrderItem],
        market_id: str | None = None,
        special_instructions: str | None = None,
    ) -> Order:
        if not actor.has_role(Role.CONSUMER):
            raise InvalidActorForTransition("Only consumers can place orders.")
        order = build_order(
            consumer_id=actor.user_id,
            vendor_id=vendor_id,
            items=items,
            shopper_fee_rate=self.shopper_fee_rate,
            market_id=market_id,
            special_instructions=special_instructions,
        )
        job = ShopperJob(order_id=order.id, commission_amount=order.shopper_fee)
        await self.store.insert_order(order, job)
        logger.info("Created order_id=%s number=%s total=%s", order.id, order.order_number, order.total)
        return order

    async def get_order(self, order_id: str) -> Order:
        return await self.store.load_order(order_id)

    async def transition(
        self,
        order_id: str,
        actor: Actor,
        to_status: OrderStatus,
        observed_status: OrderStatus,
        override: bool = False,
    ) -> Order:
        order = await self.store.load_order(order_id)
        with _track_rejections(order_id):
            result = self.policy.attempt(order, actor, to_status, observed_status, override=override)
            saved = await self.store.save_order(order, expected_prior_status=result.from_status)
        await self._after_transition(saved, result)
        return saved

    async def available_actions(self, order_id: str, actor: Actor) -> list[OrderStatus]:
        order = await self.store.load_order(order_id)
        return self.policy.available_actions(order, actor)

    async def payment_gate(self, order_id: str) -> tuple[bool, str | None]:
        order = await self.store.load_order(order_id)
        job = await self.store.load_shopper_job(order_id)
        return can_pay(order, job), blocking_reason(order)

    # --- evidence and inspection ---

    async def attach_proof(self, order_id: str, actor: Actor, ref: str, observed_status: OrderStatus) -> Order:
        order = await self.store.load_order(order_id)
        with _track_rejections(order_id):
            self.policy.check_evidence(order, actor, observed_status)
            order.attach_proof(ref)
            saved = await self.store.save_order(
                order, expected_prior_status=observed_status, fields=("proof_of_purchase_ref",)
            )
        job = await self.store.load_shopper_job(order_id)
        if job is not None:
            job.proof_url = ref
            await self.store.save_shopper_job(job)
        logger.info("Proof attached to order_id=%s by user_id=%s", order_id, actor.user_id)
        return saved

    async def confirm_items(self, order_id: str, actor: Actor, observed_status: OrderStatus) -> Order:
        order = await self.store.load_order(order_id)
        with _track_rejections(order_id):
            self.policy.check_evidence(order, actor, observed_status, confirm_items=True)
            order.confirm_all_items()
            saved = await self.store.save_order(
                order, expected_prior_status=observed_status, fields=("all_items_confirmed",)
            )
        logger.info("All items confirmed on order_id=%s by user_id=%s", order_id, actor.user_id)
        return saved

    async def record_inspection(
        self,
        order_id: str,
        actor: Actor,
        approved: bool,
        observed_status: OrderStatus,
        notes: str | None = None,
    ) -> Order:
        order = await self.store.load_order(order_id)
        with _track_rejections(order_id):
            self.policy.check_inspection(order, actor, observed_status)
            order.record_inspection(approved, notes)
            saved = await self.store.save_order(
                order, expected_prior_status=observed_status, fields=("inspection_status", "inspection_notes")
            )
        logger.info("Inspection %s on order_id=%s", saved.inspection_status.value, order_id)
        return saved

    # --- shopper jobs ---

    async def list_available_jobs(self) -> list[ShopperJob]:
        return await self.store.list_available_jobs()

    async def accept_job(self, order_id: str, actor: Actor) -> ShopperJob:
        order = await self.store.load_order(order_id)
        with _track_rejections(order_id):
            if not actor.has_role(Role.SHOPPER):
                raise InvalidActorForTransition("Only shoppers can accept delivery jobs.")
            if order.status in TERMINAL_STATUSES or order.status == OrderStatus.DISPUTED:
                raise PreconditionNotMet(
                    f"This order is {order.status.value} and no longer needs a shopper.",
                    current_status=order.status.value,
                )
            job = await self.store.claim_shopper_job(order_id, actor.user_id)
        logger.info("Shopper user_id=%s accepted job for order_id=%s", actor.user_id, order_id)
        return job

    # --- payments ---

    async def initiate_payment(
        self,
        order_id: str,
        actor: Actor,
        amount,
        momo_phone: str,
        momo_network: str,
    ) -> Payment:
        order = await self.store.load_order(order_id)
        with _track_rejections(order_id):
            if not acts_as(actor, Role.CONSUMER, order):
                raise InvalidActorForTransition("Only the customer who placed this order can pay for it.")
            if not can_pay(order):
                raise PreconditionNotMet(blocking_reason(order), current_status=order.status.value)
            if order.status != OrderStatus.INSPECTING:
                raise PreconditionNotMet(
                    "Payment opens once the shopper hands the order over for inspection.",
                    current_status=order.status.value,
                )
        amount = validate_payment_request(order, amount, momo_phone, momo_network)
        # The store refuses a second pending payment for the same order
        payment = await self.store.create_payment(
            build_payment(order, actor.user_id, amount, momo_phone, momo_network)
        )
        payments_initiated_total.inc()
        logger.info("Payment initiated for order_id=%s reference=%s", order_id, payment.external_reference)
        return payment

    async def confirm_payment(self, payment_id: str, actor: Actor) -> Order:
        """
        Admin or provider webhook confirms a pending payment. The order completes through the
        consumer's inspecting -> completed transition, so PaymentGate is enforced here too.
        """
        if not actor.has_role(Role.ADMIN):
            raise InvalidActorForTransition("Only an admin or the payment provider can confirm payments.")
        payment = await self.store.load_payment(payment_id)
        if payment.status == PaymentStatus.COMPLETED:
            return await self.store.load_order(payment.order_id)
        key = f"payment-confirm:{payment.external_reference}"
        if await self.seen_before(key):
            logger.info("Duplicate confirmation for payment reference=%s, skipped", payment.external_reference)
            return await self.store.load_order(payment.order_id)
        try:
            order = await self.store.load_order(payment.order_id)
            payer = Actor(user_id=order.consumer_id, roles=frozenset({Role.CONSUMER}))
            with _track_rejections(order.id):
                result = self.policy.attempt(order, payer, OrderStatus.COMPLETED, order.status)
                saved = await self.store.save_order(order, expected_prior_status=result.from_status)
        except Exception:
            await self.forget(key)
            raise
        payment.status = PaymentStatus.COMPLETED
        payment.updated_at = utcnow()
        await self.store.save_payment(payment)
        payments_confirmed_total.inc()
        logger.info("Payment reference=%s confirmed by user_id=%s", payment.external_reference, actor.user_id)
        await self._after_transition(saved, result)
        return saved

    # --- disputes ---

    async def open_dispute(
        self,
        order_id: str,
        actor: Actor,
        category: DisputeCategory,
        description: str,
        reported_user_id: str | None = None,
    ) -> Dispute:
        """
        Escape hatch: forces the order to disputed regardless of the transition table.
        Any party of the order (or an admin) may open one.
        """
        order = await self.store.load_order(order_id)
        with _track_rejections(order_id):
            if not any(acts_as(actor, role, order) for role in Role):
                raise InvalidActorForTransition("Only parties to this order can open a dispute.")
            dispute = Dispute(
                order_id=order_id,
                reporter_id=actor.user_id,
                reported_user_id=reported_user_id,
                category=category,
                description=description,
            )
            saved, prior = await self.store.create_dispute(dispute)
        disputes_opened_total.labels(category=category.value).inc()
        logger.warning("Dispute %s opened on order_id=%s (was %s)", dispute.id, order_id, prior.value)
        if prior != OrderStatus.DISPUTED:
            role = next(role for role in Role if acts_as(actor, role, order))
            await self._after_transition(saved, TransitionResult(
                order_id=order_id,
                from_status=prior,
                to_status=OrderStatus.DISPUTED,
                actor_id=actor.user_id,
                role=role,
            ))
        return dispute

    async def update_dispute(
        self,
        dispute_id: str,
        actor: Actor,
        status: DisputeStatus | None = None,
        resolution: str | None = None,
        admin_notes: str | None = None,
    ) -> Dispute:
        """Admin review. Never changes the order; the admin re-disposes it with a separate transition."""
        if not actor.has_role(Role.ADMIN):
            raise InvalidActorForTransition("Only an admin can update disputes.")
        dispute = await self.store.load_dispute(dispute_id)
        if status is not None:
            dispute.status = status
            if status in (DisputeStatus.RESOLVED, DisputeStatus.CLOSED):
                dispute.resolved_by = actor.user_id
        if resolution:
            dispute.resolution = resolution
        if admin_notes:
            dispute.admin_notes = admin_notes
        dispute.updated_at = utcnow()
        await self.store.save_dispute(dispute)
        logger.info("Dispute %s now %s (by user_id=%s)", dispute_id, dispute.status.value, actor.user_id)
        return dispute

    async def _after_transition(self, order: Order, result: TransitionResult) -> None:
        order_transitions_total.labels(
            actor_role=result.role.value,
            from_status=result.from_status.value,
            to_status=result.to_status.value,
        ).inc()
        if result.override:
            admin_overrides_total.labels(to_status=result.to_status.value).inc()
        logger.info(
            "Order order_id=%s %s -> %s by user_id=%s (%s)",
            order.id, result.from_status.value, result.to_status.value, result.actor_id, result.role.value,
        )
        try:
            await self._sync_job(order, result.to_status)
        except PersistenceUnavailable:
            # Order write is already committed
            logger.warning("Failed to sync shopper job for order_id=%s", order.id, exc_info=True)
        await self.publisher(OrderTransitioned(
            order_id=order.id,
            order_number=order.order_number,
            from_status=result.from_status.value,
            to_status=result.to_status.value,
            actor_id=result.actor_id,
            actor_role=result.role.value,
            override=result.override,
        ))

    async def _sync_job(self, order: Order, to_status: OrderStatus) -> None:
        job_status = _JOB_STATUS_FOR.get(to_status)
        if job_status is None:
            return
        job = await self.store.load_shopper_job(order.id)
        if job is None or job.shopper_id is None:
            return
        job.status = job_status
        if to_status == OrderStatus.PICKED_UP:
            job.picked_up_at = utcnow()
        elif to_status == OrderStatus.COMPLETED:
            job.delivered_at = utcnow()
        await self.store.save_shopper_job(job)
