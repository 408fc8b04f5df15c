"""
Shared builders for the test modules: actors for each party, a standard basket and
helpers to walk an order along the normal flow.
"""
from decimal import Decimal

from market_orders.order_state import Actor, Order, OrderItem, OrderStatus, Role, build_order

CONSUMER = Actor(user_id="consumer-1", roles=frozenset({Role.CONSUMER}))
VENDOR = Actor(user_id="vendor-1", roles=frozenset({Role.VENDOR}))
SHOPPER = Actor(user_id="shopper-1", roles=frozenset({Role.SHOPPER}))
ADMIN = Actor(user_id="admin-1", roles=frozenset({Role.ADMIN}))
OTHER_SHOPPER = Actor(user_id="shopper-2", roles=frozenset({Role.SHOPPER}))

PARTY_FOR_ROLE = {
    Role.CONSUMER: CONSUMER,
    Role.VENDOR: VENDOR,
    Role.SHOPPER: SHOPPER,
    Role.ADMIN: ADMIN,
}

FEE_RATE = Decimal("0.10")
MOMO_PHONE = "0241234567"


def basket() -> list[OrderItem]:
    """2 x 5.00 + 1 x 3.50 = 13.50"""
    return [
        OrderItem(product_id="prod-tomato", product_name="Tomatoes (1kg)", quantity=2, unit_price=Decimal("5.00")),
        OrderItem(product_id="prod-pepper", product_name="Scotch bonnet", quantity=1, unit_price=Decimal("3.50")),
    ]


def make_order(status: OrderStatus = OrderStatus.PENDING, **fields) -> Order:
    """Order owned by the standard parties, with the shopper already assigned."""
    order = build_order(
        consumer_id=CONSUMER.user_id,
        vendor_id=VENDOR.user_id,
        items=basket(),
        shopper_fee_rate=FEE_RATE,
    )
    return order.model_copy(update={"status": status, "shopper_id": SHOPPER.user_id, **fields})


async def drive_to_inspecting(manager, order_id: str) -> Order:
    """pending -> accepted -> preparing -> ready, shopper claims, picks up, uploads proof, hands over."""
    await manager.transition(order_id, VENDOR, OrderStatus.ACCEPTED, OrderStatus.PENDING)
    await manager.transition(order_id, VENDOR, OrderStatus.PREPARING, OrderStatus.ACCEPTED)
    await manager.transition(order_id, VENDOR, OrderStatus.READY, OrderStatus.PREPARING)
    await manager.accept_job(order_id, SHOPPER)
    await manager.transition(order_id, SHOPPER, OrderStatus.PICKED_UP, OrderStatus.READY)
    await manager.attach_proof(order_id, SHOPPER, "evidence/receipt-001.jpg", OrderStatus.PICKED_UP)
    return await manager.transition(order_id, SHOPPER, OrderStatus.INSPECTING, OrderStatus.PICKED_UP)
