import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import insert, update

from conftest import add_to_cart, available, orders_for, published, seed_stock
from services.payment.app import main as payment_main
from services.payment.app.gateway import ScriptedGateway
from services.payment.app.schema import payment_attempts
from services.saga.app import saga_store
from services.saga.app.errors import (
    CheckoutFailed,
    CheckoutInProgress,
    CollaboratorError,
    EmptyCart,
    IdempotencyKeyReused,
    InsufficientStock,
    PaymentDeclined,
)
from services.saga.app.models import CheckoutResult, SagaStep
from services.saga.app.recovery import sweep_once
from services.saga.app.schema import saga_records


async def _saga(dbs, saga_id):
    async with dbs["saga"]() as session:
        return await saga_store.get_saga(session, saga_id)


async def _saga_by_key(dbs, key):
    async with dbs["saga"]() as session:
        return await saga_store.get_by_key(session, key)


async def _reservation(http, reservation_id):
    resp = await http["inventory"].get(f"/queries/reservations/{reservation_id}")
    return resp.json() if resp.status_code == 200 else None


async def _cart(http, customer_id):
    resp = await http["cart"].get(f"/queries/carts/{customer_id}")
    return resp.json()["lines"]


@pytest.fixture
def scripted(monkeypatch):
    def install(outcomes, refund_failures=0):
        gw = ScriptedGateway(outcomes, refund_failures=refund_failures)
        monkeypatch.setattr(payment_main, "gateway", gw)
        return gw

    return install


@pytest.mark.asyncio
async def test_happy_path_completes(orchestrator, http, dbs, gateway, redis):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2, "10.00")

    result = await orchestrator.start_checkout("c-1", "key-1")

    assert result.status == "COMPLETED"
    assert result.total == Decimal("20.00")
    assert result.currency == "USD"
    assert await available(http, "SKU-1") == 3
    assert gateway.charges == {result.saga_id: Decimal("20.00")}

    [order] = await orders_for(http, "c-1")
    assert order["order_id"] == result.order_id
    assert order["status"] == "PAID"
    assert order["saga_id"] == result.saga_id

    reservation = await _reservation(http, f"rsv-{result.saga_id}")
    assert reservation["state"] == "COMMITTED"
    assert await _cart(http, "c-1") == []

    record = await _saga(dbs, result.saga_id)
    assert record.step is SagaStep.COMPLETED
    assert record.archived_at is not None
    assert record.owner is None
    assert record.payment_key == result.saga_id
    assert published(redis, "saga_events") == ["SagaCompleted"]


@pytest.mark.asyncio
async def test_same_key_returns_first_result(orchestrator, http, gateway):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2)

    first = await orchestrator.start_checkout("c-1", "key-1")
    await add_to_cart(http, "c-1", "SKU-1", 1)
    second = await orchestrator.start_checkout("c-1", "key-1")

    assert second == first
    assert len(await orders_for(http, "c-1")) == 1
    assert len(gateway.charges) == 1
    assert await available(http, "SKU-1") == 3


@pytest.mark.asyncio
async def test_double_submit_without_key_makes_one_order(orchestrator, http, gateway):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2)

    results = await asyncio.gather(
        orchestrator.start_checkout("c-1"),
        orchestrator.start_checkout("c-1"),
        return_exceptions=True,
    )

    assert any(isinstance(r, CheckoutResult) for r in results)
    assert all(isinstance(r, (CheckoutResult, CheckoutInProgress)) for r in results)
    assert len(await orders_for(http, "c-1")) == 1
    assert len(gateway.charges) == 1
    assert await available(http, "SKU-1") == 3


@pytest.mark.asyncio
async def test_key_reused_by_another_customer(orchestrator, http):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 1)
    await add_to_cart(http, "c-2", "SKU-1", 1)
    await orchestrator.start_checkout("c-1", "shared")

    with pytest.raises(IdempotencyKeyReused):
        await orchestrator.start_checkout("c-2", "shared")
    assert await orders_for(http, "c-2") == []


@pytest.mark.asyncio
async def test_declined_payment_restores_stock(orchestrator, http, dbs, scripted, redis):
    gw = scripted(["DECLINED"])
    await seed_stock(http, "SKU-1", 5)
    await seed_stock(http, "SKU-2", 1)
    await add_to_cart(http, "c-1", "SKU-1", 2)
    await add_to_cart(http, "c-1", "SKU-2", 1)

    with pytest.raises(PaymentDeclined) as exc:
        await orchestrator.start_checkout("c-1", "key-declined")

    saga_id = exc.value.saga_id
    assert await available(http, "SKU-1") == 5
    assert await available(http, "SKU-2") == 1
    assert await orders_for(http, "c-1") == []
    assert (await _reservation(http, f"rsv-{saga_id}"))["state"] == "RELEASED"
    assert len(await _cart(http, "c-1")) == 2

    record = await _saga(dbs, saga_id)
    assert record.step is SagaStep.FAILED
    assert record.error_code == "PaymentDeclined"
    assert published(redis, "saga_events") == ["SagaCompensating", "SagaFailed"]

    with pytest.raises(PaymentDeclined):
        await orchestrator.start_checkout("c-1", "key-declined")
    assert gw.charge_calls == 1


@pytest.mark.asyncio
async def test_two_customers_race_for_last_units(orchestrator, http, dbs, gateway):
    await seed_stock(http, "SKU-1", 2)
    await add_to_cart(http, "c-1", "SKU-1", 2, "10.00")
    await add_to_cart(http, "c-2", "SKU-1", 2, "10.00")

    results = await asyncio.gather(
        orchestrator.start_checkout("c-1", "key-c1"),
        orchestrator.start_checkout("c-2", "key-c2"),
        return_exceptions=True,
    )

    completed = [r for r in results if isinstance(r, CheckoutResult)]
    rejected = [r for r in results if isinstance(r, InsufficientStock)]
    assert len(completed) == 1
    assert len(rejected) == 1
    assert rejected[0].sku == "SKU-1"
    assert await available(http, "SKU-1") == 0
    assert len(gateway.charges) == 1

    loser = await _saga(dbs, rejected[0].saga_id)
    assert loser.step is SagaStep.FAILED
    assert loser.error_code == "InsufficientStock"
    assert loser.error_detail == "SKU-1"
    assert await _reservation(http, f"rsv-{loser.saga_id}") is None


@pytest.mark.asyncio
async def test_insufficient_stock_is_not_retried(orchestrator, http, dbs, gateway):
    await seed_stock(http, "SKU-1", 1)
    await add_to_cart(http, "c-1", "SKU-1", 2)

    with pytest.raises(InsufficientStock) as exc:
        await orchestrator.start_checkout("c-1", "key-short")

    assert exc.value.to_dict()["sku"] == "SKU-1"
    assert await available(http, "SKU-1") == 1
    assert gateway.charges == {}
    with pytest.raises(InsufficientStock):
        await orchestrator.start_checkout("c-1", "key-short")


@pytest.mark.asyncio
async def test_empty_cart(orchestrator, http, dbs):
    with pytest.raises(EmptyCart):
        await orchestrator.start_checkout("c-empty")
    async with dbs["saga"]() as session:
        assert await saga_store.list_sagas(session, "c-empty") == []

    with pytest.raises(EmptyCart) as exc:
        await orchestrator.start_checkout("c-empty", "key-empty")
    record = await _saga(dbs, exc.value.saga_id)
    assert record.step is SagaStep.FAILED
    assert record.error_code == "EmptyCart"


@pytest.mark.asyncio
async def test_errored_charge_is_retried_with_same_key(orchestrator, http, scripted):
    gw = scripted(["ERRORED", "RAISE", "SUCCEEDED"])
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 1)

    result = await orchestrator.start_checkout("c-1", "key-retry")

    assert result.status == "COMPLETED"
    assert gw.charge_calls == 3
    assert list(gw.charges) == [result.saga_id]


@pytest.mark.asyncio
async def test_exhausted_charge_retries_compensate(orchestrator, http, dbs, scripted):
    gw = scripted(["ERRORED"])
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2)

    with pytest.raises(CheckoutFailed) as exc:
        await orchestrator.start_checkout("c-1", "key-exhausted")

    assert gw.charge_calls == 3
    assert await available(http, "SKU-1") == 5
    assert await orders_for(http, "c-1") == []
    record = await _saga(dbs, exc.value.saga_id)
    assert record.step is SagaStep.FAILED
    assert record.error_code == "CheckoutFailed"


@pytest.mark.asyncio
async def test_reserve_timeout_releases_hold(orchestrator, http, dbs, gateway):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2)
    real_reserve = orchestrator.stock.reserve

    async def reserve_then_time_out(*args):
        await real_reserve(*args)
        raise CollaboratorError("inventory timed out")

    orchestrator.stock.reserve = reserve_then_time_out

    with pytest.raises(CheckoutFailed) as exc:
        await orchestrator.start_checkout("c-1", "key-timeout")

    assert await available(http, "SKU-1") == 5
    assert gateway.charges == {}
    reservation = await _reservation(http, f"rsv-{exc.value.saga_id}")
    assert reservation["state"] == "RELEASED"


@pytest.mark.asyncio
async def test_resume_after_payment_charged(orchestrator, http, dbs, gateway):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2)
    orchestrator.orders.create_if_absent = _raise(CollaboratorError("order service down"))

    with pytest.raises(CheckoutInProgress) as exc:
        await orchestrator.start_checkout("c-1", "key-crash")

    saga_id = exc.value.saga_id
    parked = await _saga(dbs, saga_id)
    assert parked.step is SagaStep.PAYMENT_CHARGED
    assert parked.owner is None
    assert "order service down" in parked.last_error

    del orchestrator.orders.create_if_absent
    outcomes = await sweep_once(orchestrator, dbs["saga"])

    assert outcomes == {saga_id: "COMPLETED"}
    assert len(gateway.charges) == 1
    attempt = (await http["payment"].get(f"/queries/payments/{saga_id}")).json()
    assert attempt["provider_calls"] == 1
    stock = (await http["inventory"].get("/queries/stock/SKU-1")).json()
    assert stock["available"] == 3
    assert stock["total"] == 5
    assert len(await orders_for(http, "c-1")) == 1

    replay = await orchestrator.start_checkout("c-1", "key-crash")
    assert replay.saga_id == saga_id


@pytest.mark.asyncio
async def test_expired_lease_of_crashed_runner_is_taken_over(orchestrator, http, dbs, gateway):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 1)
    orchestrator.orders.create_if_absent = _raise(CollaboratorError("order service down"))
    with pytest.raises(CheckoutInProgress) as exc:
        await orchestrator.start_checkout("c-1", "key-dead")
    del orchestrator.orders.create_if_absent
    saga_id = exc.value.saga_id

    await _set_lease(dbs, saga_id, "dead-runner", timedelta(minutes=5))
    with pytest.raises(CheckoutInProgress):
        await orchestrator.start_checkout("c-1", "key-dead")
    assert await sweep_once(orchestrator, dbs["saga"]) == {}

    await _set_lease(dbs, saga_id, "dead-runner", timedelta(minutes=-5))
    result = await orchestrator.start_checkout("c-1", "key-dead")

    assert result.status == "COMPLETED"
    assert len(gateway.charges) == 1
    assert await available(http, "SKU-1") == 4


@pytest.mark.asyncio
async def test_failed_compensation_is_retried_by_recovery(orchestrator, http, dbs, scripted):
    gw = scripted(["SUCCEEDED"], refund_failures=3)
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2)
    real_commit = orchestrator.stock.commit

    async def commit_after_expiry(reservation_id):
        await orchestrator.stock.release(reservation_id)
        return await real_commit(reservation_id)

    orchestrator.stock.commit = commit_after_expiry

    with pytest.raises(CheckoutFailed) as exc:
        await orchestrator.start_checkout("c-1", "key-refund")

    saga_id = exc.value.saga_id
    stuck = await _saga(dbs, saga_id)
    assert stuck.step is SagaStep.COMPENSATING
    assert stuck.last_error
    assert gw.refunds == set()

    outcomes = await sweep_once(orchestrator, dbs["saga"])

    assert outcomes == {saga_id: "CheckoutFailed"}
    assert gw.refunds == {stuck.provider_ref}
    assert (await _saga(dbs, saga_id)).step is SagaStep.FAILED
    assert await available(http, "SKU-1") == 5
    assert await orders_for(http, "c-1") == []


@pytest.mark.asyncio
async def test_cart_clear_failure_still_completes(orchestrator, http, dbs):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 1)
    orchestrator.snapshots.clear = _raise(CollaboratorError("cart service down"))

    result = await orchestrator.start_checkout("c-1", "key-cart")

    assert result.status == "COMPLETED"
    assert len(await _cart(http, "c-1")) == 1
    async with dbs["saga"]() as session:
        log = await saga_store.load_log(session, result.saga_id)
    assert (log[-1]["action"], log[-1]["status"]) == ("ClearCart", "FAILED")

@pytest.mark.asyncio
async def test_charge_that_landed_before_timeout_continues(orchestrator, http, gateway):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2, "10.00")
    real_charge = orchestrator.payments.charge

    async def charge_then_time_out(*args):
        await real_charge(*args)
        raise CollaboratorError("payment timed out")

    orchestrator.payments.charge = charge_then_time_out

    result = await orchestrator.start_checkout("c-1", "key-landed")

    assert result.status == "COMPLETED"
    assert gateway.charges == {result.saga_id: Decimal("20.00")}
    assert gateway.refunds == set()
    assert len(await orders_for(http, "c-1")) == 1
    attempt = (await http["payment"].get(f"/queries/payments/{result.saga_id}")).json()
    assert attempt["provider_calls"] == 1


@pytest.mark.asyncio
async def test_declined_charge_found_on_requery(orchestrator, http, dbs, scripted):
    gw = scripted(["DECLINED"])
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2)
    real_charge = orchestrator.payments.charge

    async def charge_then_time_out(*args):
        await real_charge(*args)
        raise CollaboratorError("payment timed out")

    orchestrator.payments.charge = charge_then_time_out

    with pytest.raises(PaymentDeclined) as exc:
        await orchestrator.start_checkout("c-1", "key-declined-late")

    assert gw.charge_calls == 1
    assert await available(http, "SKU-1") == 5
    record = await _saga(dbs, exc.value.saga_id)
    assert record.step is SagaStep.FAILED
    assert record.error_code == "PaymentDeclined"
    assert (await _reservation(http, f"rsv-{record.saga_id}"))["state"] == "RELEASED"


@pytest.mark.asyncio
async def test_pending_charge_waits_at_inventory_reserved(orchestrator, http, dbs, gateway):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2, "10.00")
    in_flight = []

    async def charge_still_in_flight(key, amount, currency):
        if not in_flight:
            await _insert_attempt(dbs, key, amount, "PENDING")
            in_flight.append(key)
        raise CollaboratorError("payment timed out")

    orchestrator.payments.charge = charge_still_in_flight

    with pytest.raises(CheckoutInProgress) as exc:
        await orchestrator.start_checkout("c-1", "key-pending")

    saga_id = exc.value.saga_id
    parked = await _saga(dbs, saga_id)
    assert parked.step is SagaStep.INVENTORY_RESERVED
    assert parked.owner is None
    assert "PENDING" in parked.last_error
    assert await available(http, "SKU-1") == 3
    assert await orders_for(http, "c-1") == []

    del orchestrator.payments.charge
    outcomes = await sweep_once(orchestrator, dbs["saga"])

    assert outcomes == {saga_id: "COMPLETED"}
    assert gateway.charges == {saga_id: Decimal("20.00")}
    assert gateway.refunds == set()
    assert len(await orders_for(http, "c-1")) == 1


@pytest.mark.asyncio
async def test_compensation_refunds_charge_that_lands_late(orchestrator, http, dbs, gateway):
    await seed_stock(http, "SKU-1", 5)
    await add_to_cart(http, "c-1", "SKU-1", 2, "10.00")
    orchestrator.payments.charge = _raise(CollaboratorError("payment timed out"))
    real_get_attempt = orchestrator.payments.get_attempt
    lookups = []

    async def request_arrives_after_first_lookup(key):
        lookups.append(key)
        if len(lookups) == 2:
            await _insert_attempt(dbs, key, Decimal("20.00"), "PENDING")
        return await real_get_attempt(key)

    orchestrator.payments.get_attempt = request_arrives_after_first_lookup

    with pytest.raises(CheckoutFailed) as exc:
        await orchestrator.start_checkout("c-1", "key-late")

    saga_id = exc.value.saga_id
    stuck = await _saga(dbs, saga_id)
    assert stuck.step is SagaStep.COMPENSATING
    assert "PENDING" in stuck.last_error
    assert await available(http, "SKU-1") == 3

    resp = await http["payment"].post(
        "/commands/payments/charge",
        json={"idempotency_key": saga_id, "amount": "20.00", "currency": "USD"},
    )
    landed = resp.json()
    assert landed["outcome"] == "SUCCEEDED"

    del orchestrator.payments.charge
    del orchestrator.payments.get_attempt
    outcomes = await sweep_once(orchestrator, dbs["saga"])

    assert outcomes == {saga_id: "CheckoutFailed"}
    assert gateway.refunds == {landed["provider_ref"]}
    assert await available(http, "SKU-1") == 5
    record = await _saga(dbs, saga_id)
    assert record.step is SagaStep.FAILED
    assert record.error_code == "CheckoutFailed"
    assert await orders_for(http, "c-1") == []



def _raise(error):
    async def fail(*args, **kwargs):
        raise error

    return fail


async def _set_lease(dbs, saga_id, owner, offset):
    async with dbs["saga"]() as session:
        await session.execute(
            update(saga_records)
            .where(saga_records.c.saga_id == saga_id)
            .values(owner=owner, lease_expires_at=datetime.now(timezone.utc) + offset)
        )
        await session.commit()


async def _insert_attempt(dbs, key, amount, outcome):
    now = datetime.now(timezone.utc)
    async with dbs["payment"]() as session:
        await session.execute(
            insert(payment_attempts).values(
                idempotency_key=key,
                amount=amount,
                currency="USD",
                outcome=outcome,
                provider_calls=0,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
