"""
Request-scoped dependencies. The identity provider in front of this service resolves the
signed-in user and forwards it as X-User-Id / X-User-Roles headers.
"""
from fastapi import Header, HTTPException, Request

from market_orders.manager import OrderLifecycleManager
from market_orders.order_state import Actor, Role


def get_actor(
    x_user_id: str = Header(..., description="Signed-in user id"),
    x_user_roles: str = Header("", description="Comma separated roles: consumer, vendor, shopper, admin"),
) -> Actor:
    names = [name.strip().lower() for name in x_user_roles.split(",") if name.strip()]
    try:
        roles = frozenset(Role(name) for name in names)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role in X-User-Roles: {x_user_roles}")
    return Actor(user_id=x_user_id, roles=roles)


def get_manager(request: Request) -> OrderLifecycleManager:
    return request.app.state.manager
