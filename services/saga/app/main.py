"""
Saga Service — FastAPI エントリーポイント

チェックアウト Saga オーケストレーターを HTTP API として公開する。
Inventory / Payment / Order / Cart の各サービスをオーケストレーションし、
止まった Saga はバックグラウンドのリカバリスイープが再開する。
"""

import asyncio
import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import saga_store
from .clients import CartClient, OrderClient, PaymentClient, StockClient
from .errors import CheckoutError, SagaNotFound
from .orchestrator import CheckoutSagaOrchestrator, SagaTunables
from .recovery import run_recovery, sweep_once
from .retry import RetryPolicy
from .schema import create_schema
from .snapshot import CartSnapshotProvider

DATABASE_URL = os.environ["DATABASE_URL"]
INVENTORY_SERVICE_URL = os.environ["INVENTORY_SERVICE_URL"]
PAYMENT_SERVICE_URL = os.environ["PAYMENT_SERVICE_URL"]
ORDER_SERVICE_URL = os.environ["ORDER_SERVICE_URL"]
CART_SERVICE_URL = os.environ["CART_SERVICE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CURRENCY = os.environ.get("CHECKOUT_CURRENCY", "USD")
STEP_TIMEOUT_SECONDS = float(os.environ.get("STEP_TIMEOUT_SECONDS", "5"))
STEP_MAX_ATTEMPTS = int(os.environ.get("STEP_MAX_ATTEMPTS", "3"))
PAYMENT_MAX_ATTEMPTS = int(os.environ.get("PAYMENT_MAX_ATTEMPTS", "4"))
PAYMENT_DEADLINE_SECONDS = float(os.environ.get("PAYMENT_DEADLINE_SECONDS", "20"))
SAGA_LEASE_SECONDS = float(os.environ.get("SAGA_LEASE_SECONDS", "60"))
RECOVERY_INTERVAL_SECONDS = float(os.environ.get("RECOVERY_INTERVAL_SECONDS", "15"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
orchestrator: CheckoutSagaOrchestrator | None = None


def build_orchestrator(
    session_factory: sessionmaker,
    redis: aioredis.Redis,
    stock_http: httpx.AsyncClient,
    payment_http: httpx.AsyncClient,
    order_http: httpx.AsyncClient,
    cart_http: httpx.AsyncClient,
    tunables: SagaTunables | None = None,
) -> CheckoutSagaOrchestrator:
    if tunables is None:
        tunables = SagaTunables(
            lease_seconds=SAGA_LEASE_SECONDS,
            step_retry=RetryPolicy(
                max_attempts=STEP_MAX_ATTEMPTS, deadline=STEP_TIMEOUT_SECONDS * 2
            ),
            payment_retry=RetryPolicy(
                max_attempts=PAYMENT_MAX_ATTEMPTS, deadline=PAYMENT_DEADLINE_SECONDS
            ),
        )
    return CheckoutSagaOrchestrator(
        session_factory,
        StockClient(stock_http, STEP_TIMEOUT_SECONDS),
        PaymentClient(payment_http, STEP_TIMEOUT_SECONDS),
        OrderClient(order_http, STEP_TIMEOUT_SECONDS),
        CartSnapshotProvider(CartClient(cart_http, STEP_TIMEOUT_SECONDS), CURRENCY),
        redis,
        tunables,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にコラボレータのクライアントとリカバリスイープを開始する。"""
    global redis_pool, orchestrator
    await create_schema(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http_clients = [
        httpx.AsyncClient(base_url=url, timeout=STEP_TIMEOUT_SECONDS)
        for url in (
            INVENTORY_SERVICE_URL,
            PAYMENT_SERVICE_URL,
            ORDER_SERVICE_URL,
            CART_SERVICE_URL,
        )
    ]
    orchestrator = build_orchestrator(async_session, redis_pool, *http_clients)
    shutdown_event = asyncio.Event()
    recovery_task = asyncio.create_task(
        run_recovery(orchestrator, async_session, shutdown_event, RECOVERY_INTERVAL_SECONDS)
    )
    yield
    shutdown_event.set()
    recovery_task.cancel()
    try:
        await recovery_task
    except asyncio.CancelledError:
        pass
    for client in http_clients:
        await client.aclose()
    await redis_pool.aclose()


app = FastAPI(title="Saga Orchestrator Service", lifespan=lifespan)


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


class CheckoutRequest(BaseModel):
    customer_id: str
    idempotency_key: str | None = None


@app.post("/checkout")
async def start_checkout(
    req: CheckoutRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    チェックアウト Saga を実行する。

    成功すれば注文 ID を返す。失敗は型付きのエラー (EmptyCart / InsufficientStock /
    PaymentDeclined / CheckoutFailed) として返す。このリクエスト内で結論が出なければ
    202 CheckoutInProgress を返すので、saga_id でステータスを照会する。
    """
    result = await orchestrator.start_checkout(
        req.customer_id, req.idempotency_key or idempotency_key
    )
    return result


@app.post("/sagas/recover")
async def recover():
    """リカバリスイープを即時実行する（運用・テスト用）"""
    outcomes = await sweep_once(orchestrator, async_session)
    return {"resumed": outcomes}


@app.post("/sagas/{saga_id}/resume")
async def resume_saga(saga_id: str):
    try:
        return await orchestrator.resume(saga_id)
    except SagaNotFound:
        raise HTTPException(404, "Saga not found")


@app.get("/sagas/{saga_id}")
async def get_saga(saga_id: str):
    async with async_session() as session:
        record = await saga_store.get_saga(session, saga_id)
        if not record:
            raise HTTPException(404, "Saga not found")
        saga_log = await saga_store.load_log(session, saga_id)
    return {**record.model_dump(mode="json"), "saga_log": saga_log}


@app.get("/sagas")
async def list_sagas(customer_id: str | None = None):
    async with async_session() as session:
        records = await saga_store.list_sagas(session, customer_id)
    return [record.model_dump(mode="json", exclude={"snapshot"}) for record in records]


@app.get("/health")
async def health():
    return {"status": "ok", "service": "saga-service"}
