"""
Shared fixtures.

Each service gets its own SQLite database file (database per service) and is
exercised in-process through httpx.ASGITransport. Redis is replaced by an
AsyncMock so published events can be asserted on.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("INVENTORY_SERVICE_URL", "http://inventory")
os.environ.setdefault("PAYMENT_SERVICE_URL", "http://payment")
os.environ.setdefault("ORDER_SERVICE_URL", "http://order")
os.environ.setdefault("CART_SERVICE_URL", "http://cart")

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.cart.app import main as cart_main
from services.cart.app import schema as cart_schema
from services.inventory.app import main as inventory_main
from services.inventory.app import schema as inventory_schema
from services.order.app import main as order_main
from services.order.app import schema as order_schema
from services.payment.app import main as payment_main
from services.payment.app import schema as payment_schema
from services.payment.app.gateway import AlwaysSucceedsGateway
from services.saga.app import main as saga_main
from services.saga.app import schema as saga_schema
from services.saga.app.orchestrator import SagaTunables
from services.saga.app.retry import RetryPolicy

FAST_RETRY = RetryPolicy(
    max_attempts=2, min_wait=0.01, max_wait=0.02, multiplier=0.01, deadline=5.0
)
FAST_TUNABLES = SagaTunables(
    lease_seconds=30.0,
    step_retry=FAST_RETRY,
    payment_retry=RetryPolicy(
        max_attempts=3, min_wait=0.01, max_wait=0.02, multiplier=0.01, deadline=5.0
    ),
)


async def _open_db(tmp_path, name, schema):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / name}.db",
        connect_args={"timeout": 30},
    )
    await schema.create_schema(engine)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def redis():
    return AsyncMock()


def published(redis, channel: str) -> list[str]:
    """Event types published on a channel, in order."""
    return [
        json.loads(call.args[1])["event_type"]
        for call in redis.publish.await_args_list
        if call.args[0] == channel
    ]


@pytest_asyncio.fixture
async def dbs(tmp_path, monkeypatch, redis):
    """Per-service session factories, wired into each service module."""
    engines = []
    factories = {}
    for name, module, schema in (
        ("inventory", inventory_main, inventory_schema),
        ("payment", payment_main, payment_schema),
        ("order", order_main, order_schema),
        ("cart", cart_main, cart_schema),
        ("saga", saga_main, saga_schema),
    ):
        engine, factory = await _open_db(tmp_path, name, schema)
        engines.append(engine)
        factories[name] = factory
        monkeypatch.setattr(module, "async_session", factory)
        monkeypatch.setattr(module, "redis_pool", redis)
    yield factories
    for engine in engines:
        await engine.dispose()


@pytest.fixture
def gateway(monkeypatch):
    gw = AlwaysSucceedsGateway()
    monkeypatch.setattr(payment_main, "gateway", gw)
    return gw


@pytest_asyncio.fixture
async def http(dbs, gateway):
    """ASGI clients for the four collaborator services."""
    clients = {
        "inventory": httpx.AsyncClient(
            transport=httpx.ASGITransport(app=inventory_main.app),
            base_url="http://inventory",
        ),
        "payment": httpx.AsyncClient(
            transport=httpx.ASGITransport(app=payment_main.app),
            base_url="http://payment",
        ),
        "order": httpx.AsyncClient(
            transport=httpx.ASGITransport(app=order_main.app),
            base_url="http://order",
        ),
        "cart": httpx.AsyncClient(
            transport=httpx.ASGITransport(app=cart_main.app),
            base_url="http://cart",
        ),
    }
    yield clients
    for client in clients.values():
        await client.aclose()


@pytest.fixture
def orchestrator(dbs, http, redis, monkeypatch):
    orch = saga_main.build_orchestrator(
        dbs["saga"],
        redis,
        http["inventory"],
        http["payment"],
        http["order"],
        http["cart"],
        tunables=FAST_TUNABLES,
    )
    monkeypatch.setattr(saga_main, "orchestrator", orch)
    return orch


@pytest_asyncio.fixture
async def saga_api(orchestrator):
    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=saga_main.app), base_url="http://saga"
    )
    yield client
    await client.aclose()


# ── seed helpers ─────────────────────────────────


async def seed_stock(http, sku: str, quantity: int, price: str = "10.00") -> dict:
    resp = await http["inventory"].post(
        f"/commands/stock/{sku}/restock",
        json={"quantity": quantity, "name": sku, "price": price},
    )
    resp.raise_for_status()
    return resp.json()


async def add_to_cart(
    http, customer_id: str, sku: str, quantity: int, unit_price: str = "10.00"
) -> dict:
    resp = await http["cart"].post(
        f"/commands/carts/{customer_id}/items",
        json={"sku": sku, "name": sku, "unit_price": unit_price, "quantity": quantity},
    )
    resp.raise_for_status()
    return resp.json()


async def available(http, sku: str) -> int:
    resp = await http["inventory"].get(f"/queries/stock/{sku}")
    resp.raise_for_status()
    return resp.json()["available"]


async def orders_for(http, customer_id: str) -> list[dict]:
    resp = await http["order"].get("/queries/orders", params={"customer_id": customer_id})
    resp.raise_for_status()
    return resp.json()


def money(value) -> Decimal:
    return Decimal(str(value))
