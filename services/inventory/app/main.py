"""
Inventory Service — FastAPI エントリーポイント

在庫台帳 (Stock Ledger) サービス。
SKU ごとの available を管理し、予約 (Reserve) / 解放 (Release) / 確定 (Commit)
をアトミックに提供する。期限切れ予約はバックグラウンドの Reaper が回収する。
"""

import asyncio
import os
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, event_store, queries
from .aggregate import InsufficientStock, ReservationNotFound
from .reaper import reap_once, run_reaper
from .schema import create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
RESERVATION_TTL_SECONDS = float(os.environ.get("RESERVATION_TTL_SECONDS", "900"))
REAPER_INTERVAL_SECONDS = float(os.environ.get("REAPER_INTERVAL_SECONDS", "30"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に Redis 接続と期限切れ予約の Reaper を開始する。"""
    global redis_pool
    await create_schema(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    shutdown_event = asyncio.Event()
    reaper_task = asyncio.create_task(
        run_reaper(async_session, redis_pool, shutdown_event, REAPER_INTERVAL_SECONDS)
    )
    yield
    shutdown_event.set()
    reaper_task.cancel()
    try:
        await reaper_task
    except asyncio.CancelledError:
        pass
    await redis_pool.aclose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class EntryModel(BaseModel):
    sku: str
    quantity: int = Field(gt=0)


class ReserveRequest(BaseModel):
    reservation_id: str
    saga_id: str | None = None
    entries: list[EntryModel] = Field(min_length=1)
    ttl_seconds: float | None = None


class ReleaseRequest(BaseModel):
    reason: str = "compensation"


class RestockRequest(BaseModel):
    quantity: int = Field(gt=0)
    name: str | None = None
    price: Decimal | None = None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/reservations")
async def cmd_reserve(req: ReserveRequest):
    """在庫予約コマンド（全エントリまとめて、all-or-nothing）"""
    async with async_session() as session:
        try:
            reservation = await commands.reserve_stock(
                session,
                redis_pool,
                req.reservation_id,
                req.saga_id,
                [e.model_dump() for e in req.entries],
                req.ttl_seconds or RESERVATION_TTL_SECONDS,
            )
        except InsufficientStock as e:
            raise HTTPException(
                status_code=409,
                detail={
                    "error": "InsufficientStock",
                    "sku": e.sku,
                    "requested": e.requested,
                },
            )
        return reservation


@app.post("/commands/reservations/{reservation_id}/release")
async def cmd_release(reservation_id: str, req: ReleaseRequest | None = None):
    """在庫解放コマンド（補償トランザクション）"""
    async with async_session() as session:
        return await commands.release_reservation(
            session,
            redis_pool,
            reservation_id,
            req.reason if req else "compensation",
        )


@app.post("/commands/reservations/{reservation_id}/commit")
async def cmd_commit(reservation_id: str):
    """在庫確定コマンド（決済成功後に Saga から呼ばれる）"""
    async with async_session() as session:
        try:
            return await commands.commit_reservation(session, redis_pool, reservation_id)
        except ReservationNotFound:
            raise HTTPException(404, "Reservation not found")


@app.post("/commands/reservations/reap")
async def cmd_reap():
    """期限切れ予約の回収を即時実行する（運用・テスト用）"""
    released = await reap_once(async_session, redis_pool)
    return {"released": released}


@app.post("/commands/stock/{sku}/restock")
async def cmd_restock(sku: str, req: RestockRequest):
    """入荷コマンド"""
    async with async_session() as session:
        return await commands.restock(
            session, redis_pool, sku, req.quantity, req.name, req.price
        )


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/stock")
async def query_list_stock():
    async with async_session() as session:
        return await queries.list_stock(session)


@app.get("/queries/stock/{sku}")
async def query_get_stock(sku: str):
    async with async_session() as session:
        stock = await queries.get_stock(session, sku)
        if not stock:
            raise HTTPException(404, "SKU not found")
        return stock


@app.get("/queries/reservations/{reservation_id}")
async def query_get_reservation(reservation_id: str):
    async with async_session() as session:
        reservation = await queries.get_reservation(session, reservation_id)
        if not reservation:
            raise HTTPException(404, "Reservation not found")
        return reservation


# ── Event Store (監査用) ─────────────────────────


@app.get("/events")
async def get_all_events():
    async with async_session() as session:
        return await event_store.load_all_events(session)


@app.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: str):
    async with async_session() as session:
        return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
