"""
Payment Service — コマンドハンドラ (CQRS Write 側)

課金 (Charge) と返金 (Refund) を冪等に処理する。

  1. idempotency_key の行を PENDING で作る（既にあれば作らない）
  2. 最終結果 (SUCCEEDED / DECLINED) が記録済みならそれを返す
  3. PENDING / ERRORED なら同じキーでプロバイダへ転送する
  4. 結果を記録してイベントを発行する
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import queries
from .events import PaymentDeclined, PaymentErrored, PaymentRefunded, PaymentSucceeded
from .gateway import GatewayError, GatewayResult, PaymentGateway, PaymentOutcome
from .schema import payment_attempts

logger = logging.getLogger(__name__)

CHANNEL = "payment_events"
FINAL_OUTCOMES = {PaymentOutcome.SUCCEEDED.value, PaymentOutcome.DECLINED.value}
CENTS = Decimal("0.01")


class IdempotencyKeyMismatch(Exception):
    """同じキーで異なる金額・通貨の課金が要求された"""


class PaymentNotFound(Exception):
    pass


async def _publish(redis: aioredis.Redis, event_type: str, event: BaseModel) -> None:
    await redis.publish(
        CHANNEL,
        json.dumps(
            {"event_type": event_type, "data": event.model_dump(mode="json")},
            default=str,
        ),
    )


async def charge(
    session: AsyncSession,
    redis: aioredis.Redis,
    gateway: PaymentGateway,
    idempotency_key: str,
    amount: Decimal,
    currency: str,
) -> dict:
    """
    課金コマンド

    同じ idempotency_key で何度呼んでも、プロバイダ側の課金は高々1回。
    """
    amount = Decimal(amount).quantize(CENTS)
    now = datetime.now(timezone.utc)

    try:
        await session.execute(
            insert(payment_attempts).values(
                idempotency_key=idempotency_key,
                amount=amount,
                currency=currency,
                outcome=PaymentOutcome.PENDING.value,
                provider_calls=0,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()

    attempt = await queries.get_attempt(session, idempotency_key)
    if Decimal(attempt["amount"]) != amount or attempt["currency"] != currency:
        raise IdempotencyKeyMismatch(
            f"key {idempotency_key} was used for {attempt['amount']} {attempt['currency']}"
        )
    if attempt["outcome"] in FINAL_OUTCOMES:
        return attempt

    try:
        result = await gateway.charge(idempotency_key, amount, currency)
    except GatewayError as e:
        result = GatewayResult(PaymentOutcome.ERRORED, reason=str(e))

    now = datetime.now(timezone.utc)
    await session.execute(
        update(payment_attempts)
        .where(
            payment_attempts.c.idempotency_key == idempotency_key,
            payment_attempts.c.outcome.notin_(FINAL_OUTCOMES),
        )
        .values(
            outcome=result.outcome.value,
            provider_ref=result.provider_ref,
            reason=result.reason,
            provider_calls=payment_attempts.c.provider_calls + 1,
            updated_at=now,
        )
    )
    await session.commit()

    if result.outcome is PaymentOutcome.SUCCEEDED:
        await _publish(
            redis,
            "PaymentSucceeded",
            PaymentSucceeded(
                idempotency_key=idempotency_key,
                provider_ref=result.provider_ref,
                amount=amount,
                currency=currency,
                timestamp=now,
            ),
        )
    elif result.outcome is PaymentOutcome.DECLINED:
        await _publish(
            redis,
            "PaymentDeclined",
            PaymentDeclined(idempotency_key=idempotency_key, reason=result.reason, timestamp=now),
        )
    else:
        logger.warning("Charge %s errored: %s", idempotency_key, result.reason)
        await _publish(
            redis,
            "PaymentErrored",
            PaymentErrored(idempotency_key=idempotency_key, reason=result.reason, timestamp=now),
        )

    return await queries.get_attempt(session, idempotency_key)


async def refund(
    session: AsyncSession,
    redis: aioredis.Redis,
    gateway: PaymentGateway,
    provider_ref: str,
) -> dict:
    """
    返金コマンド（Saga の補償トランザクション）

    返金済みの provider_ref に対しては何もせず SUCCEEDED を返す。
    """
    attempt = await queries.get_attempt_by_ref(session, provider_ref)
    if attempt is None:
        raise PaymentNotFound(provider_ref)
    if attempt["refunded"]:
        return {"provider_ref": provider_ref, "outcome": PaymentOutcome.SUCCEEDED.value}

    try:
        await gateway.refund(provider_ref)
    except GatewayError as e:
        logger.warning("Refund %s errored: %s", provider_ref, e)
        return {
            "provider_ref": provider_ref,
            "outcome": PaymentOutcome.ERRORED.value,
            "reason": str(e),
        }

    now = datetime.now(timezone.utc)
    await session.execute(
        update(payment_attempts)
        .where(
            payment_attempts.c.provider_ref == provider_ref,
            payment_attempts.c.refunded_at.is_(None),
        )
        .values(refunded_at=now, updated_at=now)
    )
    await session.commit()
    await _publish(
        redis,
        "PaymentRefunded",
        PaymentRefunded(
            idempotency_key=attempt["idempotency_key"],
            provider_ref=provider_ref,
            timestamp=now,
        ),
    )
    return {"provider_ref": provider_ref, "outcome": PaymentOutcome.SUCCEEDED.value}
