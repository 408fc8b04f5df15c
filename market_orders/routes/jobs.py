from fastapi import APIRouter, Depends

from market_orders.manager import OrderLifecycleManager
from market_orders.order_state import Actor, ShopperJob
from market_orders.routes.deps import get_actor, get_manager

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/available")
async def available_jobs(manager: OrderLifecycleManager = Depends(get_manager)) -> list[dict]:
    """Unclaimed delivery jobs. Commission is only shown to the shopper who takes the job."""
    jobs = await manager.list_available_jobs()
    return [job.model_dump(mode="json", exclude={"commission_amount"}) for job in jobs]


@router.post("/{order_id}/accept")
async def accept_job(
    order_id: str,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> ShopperJob:
    return await manager.accept_job(order_id, actor)
