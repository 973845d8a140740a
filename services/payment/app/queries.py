"""
Payment Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import payment_attempts


def _attempt_to_dict(row) -> dict:
    return {
        "idempotency_key": row.idempotency_key,
        "amount": str(row.amount),
        "currency": row.currency,
        "outcome": row.outcome,
        "provider_ref": row.provider_ref,
        "reason": row.reason,
        "provider_calls": row.provider_calls,
        "refunded": row.refunded_at is not None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_attempt(session: AsyncSession, idempotency_key: str) -> dict | None:
    result = await session.execute(
        select(payment_attempts).where(
            payment_attempts.c.idempotency_key == idempotency_key
        )
    )
    row = result.fetchone()
    if not row:
        return None
    return _attempt_to_dict(row)


async def get_attempt_by_ref(session: AsyncSession, provider_ref: str) -> dict | None:
    result = await session.execute(
        select(payment_attempts).where(payment_attempts.c.provider_ref == provider_ref)
    )
    row = result.fetchone()
    if not row:
        return None
    return _attempt_to_dict(row)
