"""
PostgresOrderStore against a live database (DATABASE_URL, same as the service).
Skipped when the database cannot be reached.
"""
import asyncio
from decimal import Decimal

import asyncpg
import pytest

from _helper import CONSUMER, FEE_RATE, MOMO_PHONE, OTHER_SHOPPER, SHOPPER, VENDOR, basket
from market_orders.config import settings
from market_orders.db import PostgresOrderStore, init_schema
from market_orders.errors import NotFoundError, PaymentRequestError, StaleStateError, TerminalState
from market_orders.order_state import (
    Dispute,
    DisputeCategory,
    InspectionStatus,
    OrderStatus,
    ShopperJob,
    build_order,
)
from market_orders.payments import build_payment

S = OrderStatus


@pytest.fixture
async def pg_store():
    try:
        pool = await asyncpg.create_pool(settings.database_url, min_size=1, max_size=4, timeout=3)
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        pytest.skip(f"Postgres not reachable: {e}")
    await init_schema(pool)
    yield PostgresOrderStore(pool)
    await pool.close()


async def _inserted(store):
    order = build_order(CONSUMER.user_id, VENDOR.user_id, basket(), FEE_RATE, market_id="makola")
    await store.insert_order(order, ShopperJob(order_id=order.id, commission_amount=order.shopper_fee))
    return order


@pytest.mark.parametrize("load", ["load_order", "load_dispute", "load_payment"])
async def test_malformed_ids_are_not_found(load):
    store = PostgresOrderStore(pool=None)
    with pytest.raises(NotFoundError):
        await getattr(store, load)("abc")


async def test_malformed_job_id():
    store = PostgresOrderStore(pool=None)
    assert await store.load_shopper_job("abc") is None
    with pytest.raises(NotFoundError):
        await store.claim_shopper_job("abc", SHOPPER.user_id)


async def test_round_trip_keeps_money_and_items(pg_store):
    order = await _inserted(pg_store)
    loaded = await pg_store.load_order(order.id)
    assert loaded.total == Decimal("14.85")
    assert [i.total_price for i in loaded.items] == [Decimal("10.00"), Decimal("3.50")]


async def test_second_save_with_same_token_is_stale(pg_store):
    order = await _inserted(pg_store)
    first = await pg_store.load_order(order.id)
    second = await pg_store.load_order(order.id)
    first.apply_transition(S.ACCEPTED)
    second.apply_transition(S.CANCELLED)

    await pg_store.save_order(first, expected_prior_status=S.PENDING)
    with pytest.raises(StaleStateError) as exc:
        await pg_store.save_order(second, expected_prior_status=S.PENDING)
    assert exc.value.current_status == "accepted"
    assert (await pg_store.load_order(order.id)).status == S.ACCEPTED


async def test_save_writes_only_named_columns(pg_store):
    order = await _inserted(pg_store)
    verdict = await pg_store.load_order(order.id)
    proof = await pg_store.load_order(order.id)
    verdict.record_inspection(approved=False, notes="Soft tomatoes")
    proof.attach_proof("evidence/receipt-003.jpg")

    await pg_store.save_order(verdict, S.PENDING, fields=("inspection_status", "inspection_notes"))
    await pg_store.save_order(proof, S.PENDING, fields=("proof_of_purchase_ref",))

    stored = await pg_store.load_order(order.id)
    assert stored.inspection_status == InspectionStatus.REJECTED
    assert stored.inspection_notes == "Soft tomatoes"
    assert stored.proof_of_purchase_ref == "evidence/receipt-003.jpg"


async def test_claim_race_has_one_winner(pg_store):
    order = await _inserted(pg_store)
    results = await asyncio.gather(
        pg_store.claim_shopper_job(order.id, SHOPPER.user_id),
        pg_store.claim_shopper_job(order.id, OTHER_SHOPPER.user_id),
        return_exceptions=True,
    )
    winners = [r for r in results if isinstance(r, ShopperJob)]
    assert len(winners) == 1
    assert sum(isinstance(r, StaleStateError) for r in results) == 1
    assert (await pg_store.load_order(order.id)).shopper_id == winners[0].shopper_id


async def test_dispute_forces_disputed(pg_store):
    order = await _inserted(pg_store)
    dispute = Dispute(
        order_id=order.id,
        reporter_id=CONSUMER.user_id,
        category=DisputeCategory.QUALITY,
        description="Tomatoes were soft",
    )
    saved, prior = await pg_store.create_dispute(dispute)
    assert prior == S.PENDING
    assert saved.status == S.DISPUTED
    assert (await pg_store.load_dispute(dispute.id)).order_id == order.id


async def test_cancelled_order_cannot_be_disputed(pg_store):
    order = await _inserted(pg_store)
    loaded = await pg_store.load_order(order.id)
    loaded.apply_transition(S.CANCELLED)
    await pg_store.save_order(loaded, S.PENDING)
    dispute = Dispute(
        order_id=order.id,
        reporter_id=VENDOR.user_id,
        category=DisputeCategory.OTHER,
        description="Customer never collected",
    )
    with pytest.raises(TerminalState):
        await pg_store.create_dispute(dispute)


async def test_one_pending_payment_per_order(pg_store):
    order = await _inserted(pg_store)
    await pg_store.create_payment(build_payment(order, CONSUMER.user_id, order.total, MOMO_PHONE, "mtn"))
    with pytest.raises(PaymentRequestError):
        await pg_store.create_payment(build_payment(order, CONSUMER.user_id, order.total, MOMO_PHONE, "mtn"))
