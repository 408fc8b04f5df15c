"""
Order lifecycle data model: order, line items, shopper job, dispute, payment, actor.
Status and inspection status are independent fields; PaymentGate is the only place
that reads them together.
"""
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, Field, computed_field, field_validator

CENTS = Decimal("0.01")


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    INSPECTING = "inspecting"
    APPROVED = "approved"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class InspectionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class JobStatus(str, Enum):
    AVAILABLE = "available"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    READY_FOR_DELIVERY = "ready_for_delivery"
    COMPLETED = "completed"


class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputeCategory(str, Enum):
    QUALITY = "quality"
    MISSING_ITEMS = "missing_items"
    PAYMENT = "payment"
    DELIVERY = "delivery"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Role(str, Enum):
    CONSUMER = "consumer"
    VENDOR = "vendor"
    SHOPPER = "shopper"
    ADMIN = "admin"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Canonical forward ordering of the normal flow (side branches excluded)
FORWARD_ORDER: list[OrderStatus] = [
    OrderStatus.PENDING,
    OrderStatus.ACCEPTED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.PICKED_UP,
    OrderStatus.INSPECTING,
    OrderStatus.COMPLETED,
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def new_id() -> str:
    return str(uuid.uuid4())


class Actor(BaseModel):
    """Who is asking. Passed explicitly into every policy call."""

    user_id: str
    roles: frozenset[Role] = frozenset()

    def has_role(self, role: Role) -> bool:
        return role in self.roles


class OrderItem(BaseModel):
    product_id: str
    product_name: str  # snapshot at order time
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(gt=0)

    @field_validator("unit_price")
    @classmethod
    def _round_price(cls, v: Decimal) -> Decimal:
        return to_money(v)

    @computed_field
    @property
    def total_price(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    order_number: str
    status: OrderStatus = OrderStatus.PENDING
    inspection_status: InspectionStatus = InspectionStatus.PENDING
    proof_of_purchase_ref: str | None = None
    all_items_confirmed: bool = False
    consumer_id: str
    vendor_id: str
    shopper_id: str | None = None
    market_id: str | None = None
    subtotal: Decimal
    shopper_fee: Decimal
    total: Decimal
    special_instructions: str | None = None
    inspection_notes: str | None = None
    items: list[OrderItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_evidence(self) -> bool:
        return self.proof_of_purchase_ref is not None or self.all_items_confirmed

    def apply_transition(self, new_status: OrderStatus) -> None:
        """Set the new status. Only TransitionPolicy and the dispute path call this."""
        self.status = new_status
        self.updated_at = utcnow()

    def attach_proof(self, ref: str) -> None:
        self.proof_of_purchase_ref = ref
        self.updated_at = utcnow()

    def confirm_all_items(self) -> None:
        self.all_items_confirmed = True
        self.updated_at = utcnow()

    def record_inspection(self, approved: bool, notes: str | None = None) -> None:
        """Record the consumer's inspection verdict. Does not move status."""
        self.inspection_status = InspectionStatus.APPROVED if approved else InspectionStatus.REJECTED
        self.inspection_notes = notes
        self.updated_at = utcnow()


class ShopperJob(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    shopper_id: str | None = None
    status: JobStatus = JobStatus.AVAILABLE
    proof_url: str | None = None
    commission_amount: Decimal = Decimal("0.00")
    created_at: datetime = Field(default_factory=utcnow)
    accepted_at: datetime | None = None
    picked_up_at: datetime | None = None
    delivered_at: datetime | None = None


class Dispute(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    reporter_id: str
    reported_user_id: str | None = None
    category: DisputeCategory
    description: str
    status: DisputeStatus = DisputeStatus.OPEN
    resolution: str | None = None
    admin_notes: str | None = None
    resolved_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Payment(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    user_id: str
    amount: Decimal
    momo_phone: str
    momo_network: str
    status: PaymentStatus = PaymentStatus.PENDING
    external_reference: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


def new_order_number() -> str:
    return f"KM-{uuid.uuid4().hex[:10].upper()}"


def build_order(
    consumer_id: str,
    vendor_id: str,
    items: list[OrderItem],
    shopper_fee_rate: Decimal,
    market_id: str | None = None,
    special_instructions: str | None = None,
) -> Order:
    """
    New pending order. Money is fixed here: total = subtotal + shopper_fee and is
    never recomputed afterwards, so the payable amount is stable across inspections.
    """
    if not items:
        raise ValueError("an order needs at least one item")
    subtotal = to_money(sum((item.total_price for item in items), Decimal("0")))
    shopper_fee = to_money(subtotal * shopper_fee_rate)
    return Order(
        order_number=new_order_number(),
        consumer_id=consumer_id,
        vendor_id=vendor_id,
        market_id=market_id,
        special_instructions=special_instructions,
        items=list(items),
        subtotal=subtotal,
        shopper_fee=shopper_fee,
        total=subtotal + shopper_fee,
    )
