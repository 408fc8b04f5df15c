"""
Payment authorization derived from order state. Evaluated on every check, never cached:
inspection can flip between rejected and approved independently of status.
"""
from market_orders.order_state import InspectionStatus, Order, OrderStatus, ShopperJob


def can_pay(order: Order, shopper_job: ShopperJob | None = None) -> bool:
    """True when evidence exists, inspection is approved and the order is not yet completed."""
    return (
        order.has_evidence
        and order.inspection_status == InspectionStatus.APPROVED
        and order.status != OrderStatus.COMPLETED
    )


def blocking_reason(order: Order) -> str | None:
    """One-sentence explanation of why can_pay is False, or None when payment is allowed."""
    if order.status == OrderStatus.COMPLETED:
        return "This order has already been paid for."
    if not order.has_evidence:
        return "Payment opens once proof of purchase is uploaded or all items are confirmed."
    if order.inspection_status != InspectionStatus.APPROVED:
        return "Payment opens once you approve the inspection."
    return None
