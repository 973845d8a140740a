"""
Payment Service — FastAPI エントリーポイント

決済プロバイダの前に立ち、課金と返金を冪等にする。
プロバイダは PAYMENT_GATEWAY で選択する（既定は常に成功するモック）。
"""

import os
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .gateway import PaymentGateway, build_gateway
from .schema import create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "always_succeeds")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
gateway: PaymentGateway = build_gateway(PAYMENT_GATEWAY)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_schema(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()


app = FastAPI(title="Payment Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class ChargeRequest(BaseModel):
    idempotency_key: str
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)


class RefundRequest(BaseModel):
    provider_ref: str


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/payments/charge")
async def cmd_charge(req: ChargeRequest):
    """課金コマンド。結果 (SUCCEEDED / DECLINED / ERRORED) はボディで返す。"""
    async with async_session() as session:
        try:
            return await commands.charge(
                session,
                redis_pool,
                gateway,
                req.idempotency_key,
                req.amount,
                req.currency,
            )
        except commands.IdempotencyKeyMismatch as e:
            raise HTTPException(
                status_code=409,
                detail={"error": "IdempotencyKeyMismatch", "message": str(e)},
            )


@app.post("/commands/payments/refund")
async def cmd_refund(req: RefundRequest):
    """返金コマンド（補償トランザクション）"""
    async with async_session() as session:
        try:
            return await commands.refund(session, redis_pool, gateway, req.provider_ref)
        except commands.PaymentNotFound:
            raise HTTPException(404, "Payment not found")


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/payments/{idempotency_key}")
async def query_get_payment(idempotency_key: str):
    """idempotency_key で決済状態を再照会する"""
    async with async_session() as session:
        attempt = await queries.get_attempt(session, idempotency_key)
        if not attempt:
            raise HTTPException(404, "Payment not found")
        return attempt


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payment-service", "gateway": PAYMENT_GATEWAY}
