"""
Saga Service — リカバリスイープ

終端に達しておらず、リースが切れている Saga を記録されたステップから再開する。
PAYMENT_CHARGED で止まった Saga の前進と、失敗した補償 (COMPENSATING) の再実行を
成功するまで周期的に繰り返す。
"""

import asyncio
import logging

from sqlalchemy.orm import sessionmaker

from . import saga_store
from .errors import CheckoutError
from .orchestrator import CheckoutSagaOrchestrator

logger = logging.getLogger(__name__)


async def sweep_once(
    orchestrator: CheckoutSagaOrchestrator,
    session_factory: sessionmaker,
    limit: int = 50,
) -> dict[str, str]:
    """1回分のスイープ。saga_id → 結果 (COMPLETED / エラーコード) を返す。"""
    async with session_factory() as session:
        saga_ids = await saga_store.list_resumable(session, limit)

    outcomes: dict[str, str] = {}
    for saga_id in saga_ids:
        try:
            result = await orchestrator.resume(saga_id)
            outcomes[saga_id] = result.status
        except CheckoutError as e:
            outcomes[saga_id] = e.code
        except Exception:
            logger.exception("Failed to resume saga %s", saga_id)
            outcomes[saga_id] = "ERROR"
    if saga_ids:
        logger.info("Recovery sweep resumed %d sagas: %s", len(saga_ids), outcomes)
    return outcomes


async def run_recovery(
    orchestrator: CheckoutSagaOrchestrator,
    session_factory: sessionmaker,
    shutdown_event: asyncio.Event,
    interval: float,
    limit: int = 50,
) -> None:
    logger.info("Saga recovery sweep started (interval=%.1fs)", interval)
    while not shutdown_event.is_set():
        try:
            await sweep_once(orchestrator, session_factory, limit)
        except Exception:
            logger.exception("Saga recovery sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
