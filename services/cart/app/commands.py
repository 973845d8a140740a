"""
Cart Service — コマンドハンドラ (CQRS Write 側)

カートはチェックアウトの外部コラボレータ。
同じ SKU を追加し直すと数量を加算し、単価は最新の値で上書きする。
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import queries
from .schema import cart_lines

CHANNEL = "cart_events"


async def add_item(
    session: AsyncSession,
    redis: aioredis.Redis,
    customer_id: str,
    sku: str,
    name: str,
    unit_price: Decimal,
    quantity: int,
) -> list[dict]:
    if quantity <= 0:
        raise ValueError("quantity must be > 0")
    now = datetime.now(timezone.utc)

    result = await session.execute(
        update(cart_lines)
        .where(cart_lines.c.customer_id == customer_id, cart_lines.c.sku == sku)
        .values(
            quantity=cart_lines.c.quantity + quantity,
            unit_price=unit_price,
            name=name,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        try:
            await session.execute(
                insert(cart_lines).values(
                    customer_id=customer_id,
                    sku=sku,
                    name=name,
                    unit_price=unit_price,
                    quantity=quantity,
                    added_at=now,
                    updated_at=now,
                )
            )
        except IntegrityError:
            await session.rollback()
            return await add_item(
                session, redis, customer_id, sku, name, unit_price, quantity
            )
    await session.commit()

    await redis.publish(
        CHANNEL,
        json.dumps(
            {
                "event_type": "CartItemAdded",
                "data": {"customer_id": customer_id, "sku": sku, "quantity": quantity},
            },
            default=str,
        ),
    )
    return await queries.read_cart(session, customer_id)


async def remove_item(
    session: AsyncSession,
    redis: aioredis.Redis,
    customer_id: str,
    sku: str,
) -> list[dict]:
    result = await session.execute(
        delete(cart_lines).where(
            cart_lines.c.customer_id == customer_id, cart_lines.c.sku == sku
        )
    )
    await session.commit()

    if result.rowcount:
        await redis.publish(
            CHANNEL,
            json.dumps(
                {
                    "event_type": "CartItemRemoved",
                    "data": {"customer_id": customer_id, "sku": sku},
                },
                default=str,
            ),
        )
    return await queries.read_cart(session, customer_id)


async def clear_cart(
    session: AsyncSession,
    redis: aioredis.Redis,
    customer_id: str,
) -> int:
    """カートを空にして、削除した行数を返す。空のカートに対しては 0。"""
    result = await session.execute(
        delete(cart_lines).where(cart_lines.c.customer_id == customer_id)
    )
    await session.commit()
    await redis.publish(
        CHANNEL,
        json.dumps(
            {
                "event_type": "CartCleared",
                "data": {"customer_id": customer_id, "lines_removed": result.rowcount},
            },
            default=str,
        ),
    )
    return result.rowcount
