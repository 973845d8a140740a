"""
Inventory Service — イベントストア

在庫の状態変更 (予約・解放・確定・入荷) を追記専用ログとして残す。
状態そのものは stock_items / stock_reservations が正 (source of truth) で、
イベントは監査と他サービスへの通知のために使う。
(aggregate_id, version) の UNIQUE 制約で同時追記の競合を検知する。
"""

import json
from datetime import datetime, timezone

from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import event_store


async def current_version(session: AsyncSession, aggregate_id: str) -> int:
    result = await session.execute(
        select(func.coalesce(func.max(event_store.c.version), 0)).where(
            event_store.c.aggregate_id == aggregate_id
        )
    )
    return result.scalar_one()


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int | None = None,
) -> int:
    """
    イベントを追記する。

    expected_version を省略した場合は現在のバージョンを読んでから追記する。
    コミットは呼び出し側のトランザクションに任せる。
    """
    if expected_version is None:
        expected_version = await current_version(session, aggregate_id)
    new_version = expected_version + 1
    await session.execute(
        insert(event_store).values(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            event_data=json.dumps(event_data, default=str),
            version=new_version,
            created_at=datetime.now(timezone.utc),
        )
    )
    return new_version


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    result = await session.execute(
        select(event_store)
        .where(event_store.c.aggregate_id == aggregate_id)
        .order_by(event_store.c.version.asc())
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data),
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]


async def load_all_events(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(event_store).order_by(event_store.c.created_at.asc(), event_store.c.version.asc())
    )
    return [
        {
            "aggregate_id": row.aggregate_id,
            "aggregate_type": row.aggregate_type,
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data),
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
