"""
Simulated mobile money payment requests. A request is only recorded as pending here;
an admin or the provider webhook confirms it, which completes the order.
"""
import random
import re
import string
import time
from decimal import Decimal

from market_orders.errors import PaymentRequestError
from market_orders.order_state import Order, Payment, to_money

MOMO_NETWORKS = frozenset({"mtn", "vodafone", "airteltigo"})
MOMO_PHONE_RE = re.compile(r"^0[2-5][0-9]{8}$")
AMOUNT_TOLERANCE = Decimal("0.01")


def new_payment_reference() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"REF-{int(time.time() * 1000)}-{suffix}"


def validate_payment_request(order: Order, amount, momo_phone: str, momo_network: str) -> Decimal:
    """Check phone, network and amount against the order. Returns the amount as money."""
    if not MOMO_PHONE_RE.match(momo_phone or ""):
        raise PaymentRequestError("Invalid mobile money phone number.")
    if momo_network not in MOMO_NETWORKS:
        raise PaymentRequestError("Invalid mobile money network.")
    amount = to_money(amount)
    if abs(order.total - amount) > AMOUNT_TOLERANCE:
        raise PaymentRequestError(f"Amount {amount} does not match order total {order.total}.")
    return amount


def build_payment(order: Order, user_id: str, amount: Decimal, momo_phone: str, momo_network: str) -> Payment:
    return Payment(
        order_id=order.id,
        user_id=user_id,
        amount=amount,
        momo_phone=momo_phone,
        momo_network=momo_network,
        external_reference=new_payment_reference(),
    )
