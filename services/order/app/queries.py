"""
Order Service — クエリハンドラ (CQRS の Read 側)
"""

import json

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order
from .schema import orders


def _row_to_order(row) -> Order:
    return Order(
        order_id=row.order_id,
        saga_id=row.saga_id,
        customer_id=row.customer_id,
        lines=json.loads(row.lines),
        total=row.total,
        currency=row.currency,
        status=row.status,
        created_at=row.created_at,
    )


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.order_id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return _row_to_order(row)


async def get_order_by_saga(session: AsyncSession, saga_id: str) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.saga_id == saga_id))
    row = result.fetchone()
    if not row:
        return None
    return _row_to_order(row)


async def list_orders(
    session: AsyncSession, customer_id: str | None = None
) -> list[Order]:
    query = select(orders).order_by(orders.c.created_at.desc())
    if customer_id is not None:
        query = query.where(orders.c.customer_id == customer_id)
    result = await session.execute(query)
    return [_row_to_order(row) for row in result.fetchall()]
