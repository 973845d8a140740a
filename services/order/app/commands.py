"""
Order Service — コマンドハンドラ (CQRS の Write 側)

注文作成は saga_id の UNIQUE 制約で冪等にする。
「存在確認してから INSERT」はしない。INSERT して制約違反なら既存を返す。
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, queries
from .aggregate import (
    InvalidStatusTransition,
    Order,
    OrderNotFound,
    OrderStatus,
    can_transition,
)
from .events import OrderCreated, OrderFailed, OrderPaid
from .schema import orders

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


async def create_order_if_absent(
    session: AsyncSession,
    redis: aioredis.Redis,
    saga_id: str,
    customer_id: str,
    lines: list[dict],
    total: Decimal,
    currency: str,
    status: OrderStatus = OrderStatus.CREATED,
) -> Order:
    """
    注文作成コマンド（冪等）

    saga_id の注文が既にあれば、それを変更せずに返す。
    """
    if status is OrderStatus.FAILED:
        raise ValueError("orders cannot be created as FAILED")

    now = datetime.now(timezone.utc)
    order_id = str(uuid4())
    event = OrderCreated(
        order_id=order_id,
        saga_id=saga_id,
        customer_id=customer_id,
        total=total,
        currency=currency,
        status=status.value,
        timestamp=now,
    )

    try:
        await session.execute(
            insert(orders).values(
                order_id=order_id,
                saga_id=saga_id,
                customer_id=customer_id,
                lines=json.dumps(lines, default=str),
                total=total,
                currency=currency,
                status=status.value,
                created_at=now,
                updated_at=now,
            )
        )
        await event_store.append_event(
            session, order_id, "Order", "OrderCreated", event.model_dump(mode="json"), 0
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await queries.get_order_by_saga(session, saga_id)
        if existing is None:
            raise
        logger.info("Order for saga=%s already exists: %s", saga_id, existing.order_id)
        return existing

    await redis.publish(
        CHANNEL,
        json.dumps(
            {"event_type": "OrderCreated", "data": event.model_dump(mode="json")},
            default=str,
        ),
    )
    return await queries.get_order(session, order_id)


async def update_order_status(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    status: OrderStatus,
) -> Order:
    """
    注文ステータス更新コマンド（前進のみ）

    現在と同じステータスへの更新は何もしない。
    """
    order = await queries.get_order(session, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    if order.status is status:
        return order
    if not can_transition(order.status, status):
        raise InvalidStatusTransition(order_id, order.status, status)

    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(orders)
        .where(orders.c.order_id == order_id, orders.c.status == order.status.value)
        .values(status=status.value, updated_at=now)
    )
    if result.rowcount != 1:
        # 並行して別の更新が入った。最新の状態で判定し直す
        await session.rollback()
        return await update_order_status(session, redis, order_id, status)

    if status is OrderStatus.PAID:
        event_type, event = "OrderPaid", OrderPaid(order_id=order_id, timestamp=now)
    else:
        event_type, event = "OrderFailed", OrderFailed(order_id=order_id, timestamp=now)
    await event_store.append_event(
        session, order_id, "Order", event_type, event.model_dump(mode="json")
    )
    await session.commit()

    await redis.publish(
        CHANNEL,
        json.dumps(
            {"event_type": event_type, "data": event.model_dump(mode="json")},
            default=str,
        ),
    )
    return await queries.get_order(session, order_id)
