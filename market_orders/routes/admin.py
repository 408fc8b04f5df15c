from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from market_orders.manager import OrderLifecycleManager
from market_orders.order_state import Actor, Dispute, DisputeStatus, Order, OrderStatus
from market_orders.routes.deps import get_actor, get_manager

router = APIRouter(prefix="/admin", tags=["admin"])


class OverrideBody(BaseModel):
    to_status: OrderStatus = Field(..., description="completed or cancelled")
    observed_status: OrderStatus


class DisputeUpdateBody(BaseModel):
    status: DisputeStatus | None = None
    resolution: str | None = None
    admin_notes: str | None = None


@router.post("/orders/{order_id}/override")
async def override_order(
    order_id: str,
    body: OverrideBody,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> Order:
    """
    Audited admin override: force-complete or cancel an order, bypassing preconditions
    (including PaymentGate). Logged at WARNING and counted in admin_overrides_total.
    """
    return await manager.transition(order_id, actor, body.to_status, body.observed_status, override=True)


@router.patch("/disputes/{dispute_id}")
async def update_dispute(
    dispute_id: str,
    body: DisputeUpdateBody,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> Dispute:
    """Review or resolve a dispute. The order keeps its disputed status until an admin transitions it."""
    return await manager.update_dispute(
        dispute_id, actor, status=body.status, resolution=body.resolution, admin_notes=body.admin_notes
    )


@router.post("/payments/{payment_id}/confirm")
async def confirm_payment(
    payment_id: str,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> Order:
    return await manager.confirm_payment(payment_id, actor)
