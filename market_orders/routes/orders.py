from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from market_orders.manager import OrderLifecycleManager
from market_orders.order_state import Actor, Dispute, DisputeCategory, Order, OrderItem, OrderStatus, Payment
from market_orders.payment_gate import blocking_reason, can_pay
from market_orders.routes.deps import get_actor, get_manager

router = APIRouter(prefix="/orders", tags=["orders"])


class CreateOrderBody(BaseModel):
    vendor_id: str
    market_id: str | None = None
    special_instructions: str | None = None
    items: list[OrderItem] = Field(..., min_length=1)


class TransitionBody(BaseModel):
    to_status: OrderStatus
    observed_status: OrderStatus = Field(..., description="Status the caller last saw (concurrency token)")


class ProofBody(BaseModel):
    ref: str = Field(..., min_length=1, description="Reference returned by the evidence upload service")
    observed_status: OrderStatus


class ConfirmItemsBody(BaseModel):
    observed_status: OrderStatus


class InspectionBody(BaseModel):
    approved: bool
    notes: str | None = None
    observed_status: OrderStatus


class PaymentBody(BaseModel):
    amount: Decimal = Field(..., gt=0)
    momo_phone: str
    momo_network: str


class DisputeBody(BaseModel):
    category: DisputeCategory
    description: str = Field(..., min_length=1)
    reported_user_id: str | None = None


@router.post("", status_code=201)
async def create_order(
    body: CreateOrderBody,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> Order:
    return await manager.create_order(
        actor,
        vendor_id=body.vendor_id,
        items=body.items,
        market_id=body.market_id,
        special_instructions=body.special_instructions,
    )


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> dict:
    """Order plus what this actor can do with it right now."""
    order = await manager.get_order(order_id)
    return {
        "order": order.model_dump(mode="json"),
        "available_actions": [s.value for s in manager.policy.available_actions(order, actor)],
        "can_pay": can_pay(order),
        "payment_blocked_reason": blocking_reason(order),
    }


@router.get("/{order_id}/actions")
async def available_actions(
    order_id: str,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> dict:
    actions = await manager.available_actions(order_id, actor)
    return {"order_id": order_id, "available_actions": [s.value for s in actions]}


@router.post("/{order_id}/transitions")
async def transition(
    order_id: str,
    body: TransitionBody,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> Order:
    return await manager.transition(order_id, actor, body.to_status, body.observed_status)


@router.post("/{order_id}/proof")
async def attach_proof(
    order_id: str,
    body: ProofBody,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> Order:
    return await manager.attach_proof(order_id, actor, body.ref, body.observed_status)


@router.post("/{order_id}/confirm-items")
async def confirm_items(
    order_id: str,
    body: ConfirmItemsBody,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> Order:
    return await manager.confirm_items(order_id, actor, body.observed_status)


@router.post("/{order_id}/inspection")
async def record_inspection(
    order_id: str,
    body: InspectionBody,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> Order:
    return await manager.record_inspection(order_id, actor, body.approved, body.observed_status, notes=body.notes)


@router.get("/{order_id}/payment-gate")
async def payment_gate(
    order_id: str,
    manager: OrderLifecycleManager = Depends(get_manager),
) -> dict:
    allowed, reason = await manager.payment_gate(order_id)
    return {"order_id": order_id, "can_pay": allowed, "reason": reason}


@router.post("/{order_id}/payments", status_code=202)
async def initiate_payment(
    order_id: str,
    body: PaymentBody,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> Payment:
    """Record a pending mobile money request. The order completes once the payment is confirmed."""
    return await manager.initiate_payment(order_id, actor, body.amount, body.momo_phone, body.momo_network)


@router.post("/{order_id}/disputes", status_code=201)
async def open_dispute(
    order_id: str,
    body: DisputeBody,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> Dispute:
    return await manager.open_dispute(
        order_id, actor, body.category, body.description, reported_user_id=body.reported_user_id
    )
