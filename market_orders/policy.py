"""
TransitionPolicy: the single authority on whether an actor may move an order from its
current status to a requested one. Checks run in a fixed order: terminal lock,
stale observation, role table, preconditions. Only a fully validated request mutates the order.
"""
import logging

from pydantic import BaseModel

from market_orders.errors import (
    InvalidActorForTransition,
    InvalidFromState,
    PreconditionNotMet,
    TerminalState,
    stale_state,
)
from market_orders.order_state import TERMINAL_STATUSES, Actor, Order, OrderStatus, Role
from market_orders.payment_gate import blocking_reason, can_pay

logger = logging.getLogger(__name__)

S = OrderStatus

_NON_TERMINAL = [s for s in OrderStatus if s not in TERMINAL_STATUSES]

# Role -> allowed (from, to) pairs. Disputed is reached only through dispute creation.
TRANSITIONS: dict[Role, frozenset[tuple[OrderStatus, OrderStatus]]] = {
    Role.VENDOR: frozenset({
        (S.PENDING, S.ACCEPTED),
        (S.PENDING, S.CANCELLED),
        (S.ACCEPTED, S.PREPARING),
        (S.PREPARING, S.READY),
    }),
    Role.SHOPPER: frozenset({
        (S.READY, S.PICKED_UP),
        (S.PICKED_UP, S.INSPECTING),
    }),
    Role.CONSUMER: frozenset({
        (S.INSPECTING, S.COMPLETED),
    }),
    Role.ADMIN: frozenset(
        [(s, S.CANCELLED) for s in _NON_TERMINAL] + [(s, S.COMPLETED) for s in _NON_TERMINAL]
    ),
}

# Targets an admin may force with the audited override flag, even from a terminal status
OVERRIDE_TARGETS = frozenset({S.COMPLETED, S.CANCELLED})

EVIDENCE_STATUSES = frozenset({S.PREPARING, S.READY, S.PICKED_UP, S.INSPECTING})
INSPECTION_STATUSES = frozenset({S.PICKED_UP, S.INSPECTING})


class TransitionResult(BaseModel):
    order_id: str
    from_status: OrderStatus
    to_status: OrderStatus
    actor_id: str
    role: Role
    override: bool = False


def acts_as(actor: Actor, role: Role, order: Order) -> bool:
    """Actor holds role and is that party of this order. Admins are not party-bound."""
    if not actor.has_role(role):
        return False
    if role == Role.ADMIN:
        return True
    if role == Role.CONSUMER:
        return order.consumer_id == actor.user_id
    if role == Role.VENDOR:
        return order.vendor_id == actor.user_id
    return order.shopper_id is not None and order.shopper_id == actor.user_id


def _terminal(current: OrderStatus) -> TerminalState:
    return TerminalState(
        f"This order is already {current.value} and can no longer change.",
        current_status=current.value,
    )


class TransitionPolicy:
    def __init__(self, transitions: dict[Role, frozenset[tuple[OrderStatus, OrderStatus]]] | None = None):
        self.transitions = transitions or TRANSITIONS

    def check(
        self,
        order: Order,
        actor: Actor,
        to_status: OrderStatus,
        observed_status: OrderStatus,
        override: bool = False,
    ) -> Role:
        """
        Validate without mutating. Returns the role the transition is granted under.
        Raises a TransitionError subclass naming the first failed check.
        """
        current = order.status
        if current in TERMINAL_STATUSES and not (override and acts_as(actor, Role.ADMIN, order)):
            raise _terminal(current)
        if observed_status != current:
            raise stale_state(current.value)

        if override:
            if not acts_as(actor, Role.ADMIN, order):
                raise InvalidActorForTransition(
                    "Only an admin can override the order lifecycle.", current_status=current.value
                )
            if to_status not in OVERRIDE_TARGETS or to_status == current:
                raise InvalidFromState(
                    f"An override can only complete or cancel an order, and it is already {current.value}.",
                    current_status=current.value,
                )
            return Role.ADMIN

        pair = (current, to_status)
        granted = [role for role, pairs in self.transitions.items() if pair in pairs and acts_as(actor, role, order)]
        if not granted:
            if any(pair in pairs for pairs in self.transitions.values()):
                raise InvalidActorForTransition(
                    f"You are not allowed to move this order from {current.value} to {to_status.value}.",
                    current_status=current.value,
                )
            raise InvalidFromState(
                f"An order cannot move from {current.value} to {to_status.value}.",
                current_status=current.value,
            )

        failure: PreconditionNotMet | None = None
        for role in granted:
            failure = self._precondition_failure(order, role, to_status)
            if failure is None:
                return role
        raise failure

    def attempt(
        self,
        order: Order,
        actor: Actor,
        to_status: OrderStatus,
        observed_status: OrderStatus,
        override: bool = False,
    ) -> TransitionResult:
        """Validate and, on success, apply the transition to order."""
        from_status = order.status
        role = self.check(order, actor, to_status, observed_status, override=override)
        order.apply_transition(to_status)
        if override:
            logger.warning(
                "AUDIT admin override order_id=%s %s -> %s by user_id=%s",
                order.id, from_status.value, to_status.value, actor.user_id,
            )
        return TransitionResult(
            order_id=order.id,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor.user_id,
            role=role,
            override=override,
        )

    def available_actions(self, order: Order, actor: Actor) -> list[OrderStatus]:
        """Target statuses this actor could request right now (non-override)."""
        allowed = []
        for to_status in OrderStatus:
            try:
                self.check(order, actor, to_status, order.status)
            except (InvalidActorForTransition, InvalidFromState, PreconditionNotMet, TerminalState):
                continue
            allowed.append(to_status)
        return allowed

    def check_evidence(self, order: Order, actor: Actor, observed_status: OrderStatus, confirm_items: bool = False) -> Role:
        """Who may attach proof of purchase (shopper, vendor) or confirm all items (vendor)."""
        roles = (Role.VENDOR,) if confirm_items else (Role.SHOPPER, Role.VENDOR)
        return self._check_side_action(order, actor, observed_status, roles, EVIDENCE_STATUSES, "add evidence to")

    def check_inspection(self, order: Order, actor: Actor, observed_status: OrderStatus) -> Role:
        """The consumer inspects delivered items once evidence is present."""
        role = self._check_side_action(
            order, actor, observed_status, (Role.CONSUMER,), INSPECTION_STATUSES, "inspect"
        )
        if not order.has_evidence:
            raise PreconditionNotMet(
                "Items can be inspected once proof of purchase is uploaded or all items are confirmed.",
                current_status=order.status.value,
            )
        return role

    def _check_side_action(
        self,
        order: Order,
        actor: Actor,
        observed_status: OrderStatus,
        roles: tuple[Role, ...],
        statuses: frozenset[OrderStatus],
        verb: str,
    ) -> Role:
        current = order.status
        if current in TERMINAL_STATUSES:
            raise _terminal(current)
        if observed_status != current:
            raise stale_state(current.value)
        granted = [role for role in roles if acts_as(actor, role, order)]
        if not granted:
            raise InvalidActorForTransition(f"You are not allowed to {verb} this order.", current_status=current.value)
        if current not in statuses:
            raise PreconditionNotMet(
                f"You cannot {verb} an order while it is {current.value}.", current_status=current.value
            )
        return granted[0]

    def _precondition_failure(self, order: Order, role: Role, to_status: OrderStatus) -> PreconditionNotMet | None:
        if role == Role.SHOPPER and to_status == S.INSPECTING and not order.has_evidence:
            return PreconditionNotMet(
                "Upload proof of purchase or confirm all items before sending the order for inspection.",
                current_status=order.status.value,
            )
        if role == Role.CONSUMER and to_status == S.COMPLETED and not can_pay(order):
            return PreconditionNotMet(blocking_reason(order), current_status=order.status.value)
        if role == Role.ADMIN and to_status == S.COMPLETED:
            return PreconditionNotMet(
                "Admin completion must be submitted as an audited override.",
                current_status=order.status.value,
            )
        return None


policy = TransitionPolicy()
