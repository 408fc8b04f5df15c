import pytest

from _helper import FEE_RATE
from market_orders.manager import OrderLifecycleManager
from market_orders.store import InMemoryOrderStore


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def published() -> list:
    return []


@pytest.fixture
def manager(store, published) -> OrderLifecycleManager:
    seen: set[str] = set()

    async def publisher(event):
        published.append(event)

    async def seen_before(key: str) -> bool:
        if key in seen:
            return True
        seen.add(key)
        return False

    async def forget(key: str) -> None:
        seen.discard(key)

    return OrderLifecycleManager(
        store,
        publisher=publisher,
        shopper_fee_rate=FEE_RATE,
        seen_before=seen_before,
        forget=forget,
    )
