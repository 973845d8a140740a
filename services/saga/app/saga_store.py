"""
Saga Service — SagaRecord の永続化

レコードは idempotency_key ごとに1件だけ作られる（UNIQUE 制約）。
ステップ遷移はすべて (saga_id, 期待するステップ, owner) を条件にした UPDATE で行い、
条件が外れたら OwnershipLost を送出する。同じ Saga を進めるのは常に1ランナーだけ。
"""

import json
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import OwnershipLost
from .models import TERMINAL_STEPS, CartSnapshot, SagaRecord, SagaStep
from .schema import saga_log, saga_records

_TERMINAL = [step.value for step in TERMINAL_STEPS]


def _to_record(row) -> SagaRecord:
    data = dict(row._mapping)
    if data["snapshot"]:
        data["snapshot"] = CartSnapshot.model_validate_json(data["snapshot"])
    return SagaRecord(**data)


def _log_entry(saga_id: str, action: str, status: str, detail, now: datetime) -> dict:
    if detail is not None and not isinstance(detail, str):
        detail = json.dumps(detail, default=str)
    return {
        "saga_id": saga_id,
        "action": action,
        "status": status,
        "detail": detail,
        "created_at": now,
    }


async def get_saga(session: AsyncSession, saga_id: str) -> SagaRecord | None:
    result = await session.execute(
        select(saga_records).where(saga_records.c.saga_id == saga_id)
    )
    row = result.first()
    return _to_record(row) if row else None


async def get_by_key(session: AsyncSession, idempotency_key: str) -> SagaRecord | None:
    result = await session.execute(
        select(saga_records).where(saga_records.c.idempotency_key == idempotency_key)
    )
    row = result.first()
    return _to_record(row) if row else None


async def create_if_absent(
    session: AsyncSession,
    idempotency_key: str,
    customer_id: str,
    currency: str = "USD",
    owner: str | None = None,
    lease_seconds: float | None = None,
) -> tuple[SagaRecord, bool]:
    """
    idempotency_key の SagaRecord を作る。既にあればそれを返す。

    owner を渡すと、作成と同じ INSERT でリースも取得する。
    作成直後のレコードがリカバリに拾われることはない。

    戻り値: (レコード, 今回作成したか)
    """
    now = datetime.now(timezone.utc)
    saga_id = str(uuid.uuid4())
    lease_expires_at = None
    if owner is not None and lease_seconds is not None:
        lease_expires_at = now + timedelta(seconds=lease_seconds)
    try:
        await session.execute(
            insert(saga_records).values(
                saga_id=saga_id,
                idempotency_key=idempotency_key,
                customer_id=customer_id,
                step=SagaStep.STARTED.value,
                currency=currency,
                owner=owner if lease_expires_at else None,
                lease_expires_at=lease_expires_at,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
        )
        await session.execute(
            insert(saga_log).values(
                **_log_entry(saga_id, "StartCheckout", "COMPLETED", None, now)
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await get_by_key(session, idempotency_key)
        if existing is None:
            raise
        return existing, False
    return await get_saga(session, saga_id), True


async def claim(
    session: AsyncSession,
    saga_id: str,
    owner: str,
    lease_seconds: float,
) -> SagaRecord | None:
    """
    リースを取得する。未所有・自分が所有・リース切れのときだけ成功する。
    終端に達したレコードは取得できない。
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(saga_records)
        .where(
            saga_records.c.saga_id == saga_id,
            saga_records.c.step.not_in(_TERMINAL),
            or_(
                saga_records.c.owner.is_(None),
                saga_records.c.owner == owner,
                saga_records.c.lease_expires_at < now,
            ),
        )
        .values(
            owner=owner,
            lease_expires_at=now + timedelta(seconds=lease_seconds),
            attempts=saga_records.c.attempts + 1,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        return None
    await session.commit()
    return await get_saga(session, saga_id)


async def advance(
    session: AsyncSession,
    saga_id: str,
    owner: str,
    from_step: SagaStep,
    to_step: SagaStep,
    action: str,
    status: str = "COMPLETED",
    detail=None,
    lease_seconds: float | None = None,
    **fields,
) -> SagaRecord:
    """
    from_step → to_step に遷移し、同じトランザクションで saga_log に追記する。

    終端ステップに入るときは archived_at を記録してリースを手放す。
    """
    now = datetime.now(timezone.utc)
    values = dict(fields, step=to_step.value, updated_at=now)
    if to_step in TERMINAL_STEPS:
        values.update(archived_at=now, owner=None, lease_expires_at=None)
    elif lease_seconds is not None:
        values["lease_expires_at"] = now + timedelta(seconds=lease_seconds)

    result = await session.execute(
        update(saga_records)
        .where(
            saga_records.c.saga_id == saga_id,
            saga_records.c.step == from_step.value,
            saga_records.c.owner == owner,
        )
        .values(**values)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise OwnershipLost(f"saga {saga_id}: lost guard {from_step.value}/{owner}")
    await session.execute(
        insert(saga_log).values(**_log_entry(saga_id, action, status, detail, now))
    )
    await session.commit()
    return await get_saga(session, saga_id)


async def note_error(
    session: AsyncSession,
    saga_id: str,
    owner: str,
    action: str,
    message: str,
) -> None:
    """ステップは進めずに、最後のエラーだけを記録する。"""
    now = datetime.now(timezone.utc)
    await session.execute(
        update(saga_records)
        .where(saga_records.c.saga_id == saga_id, saga_records.c.owner == owner)
        .values(last_error=message, updated_at=now)
    )
    await session.execute(
        insert(saga_log).values(**_log_entry(saga_id, action, "FAILED", message, now))
    )
    await session.commit()


async def release_lease(session: AsyncSession, saga_id: str, owner: str) -> None:
    await session.execute(
        update(saga_records)
        .where(saga_records.c.saga_id == saga_id, saga_records.c.owner == owner)
        .values(owner=None, lease_expires_at=None)
    )
    await session.commit()


async def load_log(session: AsyncSession, saga_id: str) -> list[dict]:
    result = await session.execute(
        select(saga_log)
        .where(saga_log.c.saga_id == saga_id)
        .order_by(saga_log.c.id)
    )
    return [
        {
            "seq": seq,
            "action": row.action,
            "status": row.status,
            "detail": row.detail,
            "timestamp": row.created_at,
        }
        for seq, row in enumerate(result.fetchall(), start=1)
    ]


async def list_resumable(session: AsyncSession, limit: int = 50) -> list[str]:
    """終端に達しておらず、誰もリースを持っていない（または切れている）Saga"""
    now = datetime.now(timezone.utc)
    result = await session.execute(
        select(saga_records.c.saga_id)
        .where(
            saga_records.c.step.not_in(_TERMINAL),
            or_(
                saga_records.c.owner.is_(None),
                and_(
                    saga_records.c.lease_expires_at.is_not(None),
                    saga_records.c.lease_expires_at < now,
                ),
            ),
        )
        .order_by(saga_records.c.updated_at)
        .limit(limit)
    )
    return [row.saga_id for row in result.fetchall()]


async def list_sagas(
    session: AsyncSession, customer_id: str | None = None
) -> list[SagaRecord]:
    query = select(saga_records).order_by(saga_records.c.created_at)
    if customer_id is not None:
        query = query.where(saga_records.c.customer_id == customer_id)
    result = await session.execute(query)
    return [_to_record(row) for row in result.fetchall()]
