"""
Inventory Service — 期限切れ予約の回収 (Reaper)

放棄された Saga やクラッシュした Saga が握ったままの HELD 予約を、
expires_at を過ぎたら自動で解放して在庫を回収する。
shutdown_event がセットされるまでバックグラウンドで周期実行する。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from . import commands

logger = logging.getLogger(__name__)


async def reap_once(
    async_session_factory: sessionmaker,
    redis: aioredis.Redis,
) -> list[str]:
    async with async_session_factory() as session:
        released = await commands.reap_expired(session, redis)
    if released:
        logger.info("Reaped %d expired reservations: %s", len(released), released)
    return released


async def run_reaper(
    async_session_factory: sessionmaker,
    redis: aioredis.Redis,
    shutdown_event: asyncio.Event,
    interval: float,
) -> None:
    logger.info("Reservation reaper started (interval=%.1fs)", interval)
    while not shutdown_event.is_set():
        try:
            await reap_once(async_session_factory, redis)
        except Exception:
            logger.exception("Failed to reap expired reservations")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
