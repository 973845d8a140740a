"""
Inventory Service — コマンドハンドラ (CQRS Write 側)

在庫の予約(Reserve)・解放(Release)・確定(Commit)を処理する。

過剰販売(oversell)を防ぐための原則:
  「読んで、引いて、保存する」を行わない。
  SKU ごとに条件付き UPDATE (available >= :qty のときだけ減算) を実行し、
  影響行数が 0 ならトランザクション全体をロールバックする。
  複数 SKU は常に SKU の昇順でロックを取り、デッドロックを避ける。
"""

import json
import logging
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, queries
from .aggregate import (
    InsufficientStock,
    ReservationNotFound,
    ReservationState,
    StockReservation,
)
from .events import (
    ReservedLine,
    StockCommitted,
    StockReleased,
    StockReservationFailed,
    StockReserved,
    StockRestocked,
)
from .schema import stock_items, stock_reservation_entries, stock_reservations

logger = logging.getLogger(__name__)

CHANNEL = "inventory_events"


async def _publish(redis: aioredis.Redis, event_type: str, event: BaseModel) -> None:
    await redis.publish(
        CHANNEL,
        json.dumps(
            {"event_type": event_type, "data": event.model_dump(mode="json")},
            default=str,
        ),
    )


def merge_entries(entries: list[dict]) -> dict[str, int]:
    """同じ SKU の行をまとめる。数量は正でなければならない。"""
    merged: dict[str, int] = {}
    for entry in entries:
        quantity = int(entry["quantity"])
        if quantity <= 0:
            raise ValueError(f"quantity must be > 0 (sku={entry['sku']})")
        merged[entry["sku"]] = merged.get(entry["sku"], 0) + quantity
    if not merged:
        raise ValueError("reservation needs at least one entry")
    return merged


async def reserve_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    reservation_id: str,
    saga_id: str | None,
    entries: list[dict],
    ttl_seconds: float,
) -> StockReservation:
    """
    在庫予約コマンド

    全エントリが揃って確保できた場合のみ HELD の予約を作る。
    1つでも不足すれば何も変更せず InsufficientStock を送出する。
    reservation_id が既にあればその予約をそのまま返す（冪等）。
    """
    existing = await queries.get_reservation(session, reservation_id)
    if existing is not None:
        return existing

    wanted = merge_entries(entries)
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(seconds=ttl_seconds)

    try:
        for sku in sorted(wanted):
            result = await session.execute(
                update(stock_items)
                .where(
                    stock_items.c.sku == sku,
                    stock_items.c.available >= wanted[sku],
                )
                .values(
                    available=stock_items.c.available - wanted[sku],
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                await _publish(
                    redis,
                    "StockReservationFailed",
                    StockReservationFailed(
                        reservation_id=reservation_id,
                        saga_id=saga_id,
                        sku=sku,
                        quantity_requested=wanted[sku],
                        timestamp=now,
                    ),
                )
                raise InsufficientStock(sku, wanted[sku])

        await session.execute(
            insert(stock_reservations).values(
                reservation_id=reservation_id,
                saga_id=saga_id,
                state=ReservationState.HELD.value,
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
        )
        await session.execute(
            insert(stock_reservation_entries),
            [
                {"reservation_id": reservation_id, "sku": sku, "quantity": qty}
                for sku, qty in sorted(wanted.items())
            ],
        )
        event = StockReserved(
            reservation_id=reservation_id,
            saga_id=saga_id,
            entries=[ReservedLine(sku=s, quantity=q) for s, q in sorted(wanted.items())],
            expires_at=expires_at,
            timestamp=now,
        )
        await event_store.append_event(
            session,
            reservation_id,
            "StockReservation",
            "StockReserved",
            event.model_dump(mode="json"),
            0,
        )
        await session.commit()
    except IntegrityError:
        # 同じ reservation_id の予約が先に作られた
        await session.rollback()
        existing = await queries.get_reservation(session, reservation_id)
        if existing is None:
            raise
        return existing

    await _publish(redis, "StockReserved", event)
    logger.info("Reserved %s for saga=%s: %s", reservation_id, saga_id, wanted)
    return await queries.get_reservation(session, reservation_id)


async def _release(
    session: AsyncSession,
    redis: aioredis.Redis,
    reservation_id: str,
    reason: str,
) -> tuple[StockReservation, bool]:
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(stock_reservations)
        .where(
            stock_reservations.c.reservation_id == reservation_id,
            stock_reservations.c.state == ReservationState.HELD.value,
        )
        .values(state=ReservationState.RELEASED.value, updated_at=now)
    )
    if result.rowcount != 1:
        await session.rollback()
        existing = await queries.get_reservation(session, reservation_id)
        if existing is not None:
            return existing, False

        # 予約より先に解放が届いた場合は RELEASED の墓標を残し、
        # 遅れて届いた予約が在庫を握り続けないようにする
        try:
            await session.execute(
                insert(stock_reservations).values(
                    reservation_id=reservation_id,
                    saga_id=None,
                    state=ReservationState.RELEASED.value,
                    expires_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return await _release(session, redis, reservation_id, reason)
        logger.info("Recorded release tombstone for unknown reservation %s", reservation_id)
        return await queries.get_reservation(session, reservation_id), False

    entry_rows = (
        await session.execute(
            select(stock_reservation_entries)
            .where(stock_reservation_entries.c.reservation_id == reservation_id)
            .order_by(stock_reservation_entries.c.sku)
        )
    ).fetchall()
    for entry in entry_rows:
        await session.execute(
            update(stock_items)
            .where(stock_items.c.sku == entry.sku)
            .values(
                available=stock_items.c.available + entry.quantity,
                updated_at=now,
            )
        )

    event = StockReleased(
        reservation_id=reservation_id,
        entries=[ReservedLine(sku=e.sku, quantity=e.quantity) for e in entry_rows],
        reason=reason,
        timestamp=now,
    )
    await event_store.append_event(
        session,
        reservation_id,
        "StockReservation",
        "StockReleased",
        event.model_dump(mode="json"),
    )
    await session.commit()
    await _publish(redis, "StockReleased", event)
    logger.info("Released %s (%s)", reservation_id, reason)
    return await queries.get_reservation(session, reservation_id), True


async def release_reservation(
    session: AsyncSession,
    redis: aioredis.Redis,
    reservation_id: str,
    reason: str = "compensation",
) -> StockReservation:
    """
    在庫解放コマンド（Saga の補償トランザクション）

    HELD の数量を available に戻す。RELEASED / COMMITTED なら何もしない。
    """
    reservation, _ = await _release(session, redis, reservation_id, reason)
    return reservation


async def commit_reservation(
    session: AsyncSession,
    redis: aioredis.Redis,
    reservation_id: str,
) -> StockReservation:
    """
    在庫確定コマンド

    available は予約時に減算済み。ここでは HELD → COMMITTED にして
    期限切れ解放の対象から外すだけ。RELEASED の予約はそのまま返し、
    呼び出し側が期限切れを検知できるようにする。
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(stock_reservations)
        .where(
            stock_reservations.c.reservation_id == reservation_id,
            stock_reservations.c.state == ReservationState.HELD.value,
        )
        .values(state=ReservationState.COMMITTED.value, updated_at=now)
    )
    if result.rowcount != 1:
        await session.rollback()
        existing = await queries.get_reservation(session, reservation_id)
        if existing is None:
            raise ReservationNotFound(reservation_id)
        return existing

    event = StockCommitted(reservation_id=reservation_id, timestamp=now)
    await event_store.append_event(
        session,
        reservation_id,
        "StockReservation",
        "StockCommitted",
        event.model_dump(mode="json"),
    )
    await session.commit()
    await _publish(redis, "StockCommitted", event)
    return await queries.get_reservation(session, reservation_id)


async def reap_expired(
    session: AsyncSession,
    redis: aioredis.Redis,
    now: datetime | None = None,
) -> list[str]:
    """期限切れの HELD 予約をすべて解放し、解放した reservation_id を返す。"""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(stock_reservations.c.reservation_id)
        .where(
            stock_reservations.c.state == ReservationState.HELD.value,
            stock_reservations.c.expires_at < now,
        )
        .order_by(stock_reservations.c.expires_at)
    )
    expired = list(result.scalars().all())
    await session.rollback()

    released: list[str] = []
    for reservation_id in expired:
        _, changed = await _release(session, redis, reservation_id, "expired")
        if changed:
            released.append(reservation_id)
    return released


async def restock(
    session: AsyncSession,
    redis: aioredis.Redis,
    sku: str,
    quantity: int,
    name: str | None = None,
    price=None,
) -> dict:
    """入荷コマンド: SKU を登録（なければ）し、total と available を増やす。"""
    if quantity <= 0:
        raise ValueError("quantity must be > 0")
    now = datetime.now(timezone.utc)

    values = {
        "total": stock_items.c.total + quantity,
        "available": stock_items.c.available + quantity,
        "updated_at": now,
    }
    if name is not None:
        values["name"] = name
    if price is not None:
        values["price"] = price
    result = await session.execute(
        update(stock_items).where(stock_items.c.sku == sku).values(**values)
    )
    if result.rowcount != 1:
        await session.execute(
            insert(stock_items).values(
                sku=sku,
                name=name or sku,
                price=price or 0,
                total=quantity,
                available=quantity,
                updated_at=now,
            )
        )

    stock = (
        await session.execute(select(stock_items).where(stock_items.c.sku == sku))
    ).fetchone()
    event = StockRestocked(
        sku=sku,
        quantity=quantity,
        total=stock.total,
        available=stock.available,
        timestamp=now,
    )
    await event_store.append_event(
        session, sku, "StockItem", "StockRestocked", event.model_dump(mode="json")
    )
    await session.commit()
    await _publish(redis, "StockRestocked", event)
    return await queries.get_stock(session, sku)
