from decimal import Decimal

import pytest
from pydantic import ValidationError

from _helper import CONSUMER, FEE_RATE, VENDOR, basket, make_order
from market_orders.order_state import InspectionStatus, OrderItem, OrderStatus, build_order


def test_total_is_subtotal_plus_fee():
    order = build_order(CONSUMER.user_id, VENDOR.user_id, basket(), FEE_RATE)
    assert order.subtotal == Decimal("13.50")
    assert order.shopper_fee == Decimal("1.35")
    assert order.total == Decimal("14.85")
    assert order.status == OrderStatus.PENDING
    assert order.inspection_status == InspectionStatus.PENDING
    assert order.order_number.startswith("KM-")


def test_total_not_recomputed_when_items_change():
    order = build_order(CONSUMER.user_id, VENDOR.user_id, basket(), FEE_RATE)
    order.items[0].quantity = 10
    assert order.items[0].total_price == Decimal("50.00")
    assert order.total == Decimal("14.85")
    assert order.subtotal == Decimal("13.50")


def test_item_total_always_derived():
    item = OrderItem.model_validate({
        "product_id": "prod-1",
        "product_name": "Garden eggs",
        "quantity": 3,
        "unit_price": "1.25",
        "total_price": "999.00",
    })
    assert item.total_price == Decimal("3.75")


@pytest.mark.parametrize("quantity,price", [(0, "1.00"), (-1, "1.00"), (1, "0"), (1, "-2.00")])
def test_item_rejects_non_positive_values(quantity, price):
    with pytest.raises(ValidationError):
        OrderItem(product_id="p", product_name="n", quantity=quantity, unit_price=Decimal(price))


def test_empty_basket_rejected():
    with pytest.raises(ValueError):
        build_order(CONSUMER.user_id, VENDOR.user_id, [], FEE_RATE)


def test_attach_proof_leaves_status_alone():
    order = make_order(OrderStatus.PICKED_UP)
    order.attach_proof("evidence/receipt.jpg")
    assert order.proof_of_purchase_ref == "evidence/receipt.jpg"
    assert order.status == OrderStatus.PICKED_UP
    assert order.inspection_status == InspectionStatus.PENDING
    assert order.has_evidence


def test_record_inspection_does_not_advance_status():
    order = make_order(OrderStatus.INSPECTING, proof_of_purchase_ref="evidence/receipt.jpg")
    order.record_inspection(approved=False, notes="Two tomatoes bruised")
    assert order.inspection_status == InspectionStatus.REJECTED
    assert order.inspection_notes == "Two tomatoes bruised"
    order.record_inspection(approved=True)
    assert order.inspection_status == InspectionStatus.APPROVED
    assert order.status == OrderStatus.INSPECTING


def test_terminal_statuses():
    assert make_order(OrderStatus.COMPLETED).is_terminal
    assert make_order(OrderStatus.CANCELLED).is_terminal
    assert not make_order(OrderStatus.DISPUTED).is_terminal
