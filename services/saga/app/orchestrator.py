"""
Saga Orchestrator — チェックアウト Saga

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが各サービスへのコマンド実行を制御する。
  進捗はすべて SagaRecord に永続化し、どのステップからでも再開できる。
  失敗時は補償トランザクション（返金 → 在庫解放）を実行して整合性を保つ。

  フロー:
  ┌─────────────────────────────────────────────────────────────┐
  │  STARTED              カートのスナップショットを取る           │
  │                        └─ 空 → FAILED(EmptyCart)              │
  │  INVENTORY_RESERVING  Inventory Service に在庫予約を依頼       │
  │                        └─ 在庫不足 → FAILED(InsufficientStock) │
  │  INVENTORY_RESERVED   Payment Service に課金を依頼             │
  │                        └─ 拒否 → COMPENSATING(PaymentDeclined) │
  │                        └─ PENDING → 待機（リカバリで再照会）   │
  │  PAYMENT_CHARGED      予約を確定し、注文を作成 (PAID)          │
  │  ORDER_CREATED        カートを空にする（失敗しても完了扱い）   │
  │  COMPENSATING         返金 → 在庫解放 → FAILED                 │
  └─────────────────────────────────────────────────────────────┘
"""

import json
import logging
import uuid
from dataclasses import dataclass, field

import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from . import saga_store
from .clients import OrderClient, PaymentClient, StockClient
from .errors import (
    CheckoutFailed,
    CheckoutInProgress,
    CollaboratorError,
    EmptyCart,
    IdempotencyKeyReused,
    InsufficientStock,
    OwnershipLost,
    PaymentDeclined,
    SagaNotFound,
    error_from_code,
)
from .models import (
    CartSnapshot,
    CheckoutResult,
    SagaRecord,
    SagaStep,
    derive_idempotency_key,
)
from .retry import RetryPolicy, call_with_retry
from .snapshot import CartSnapshotProvider

logger = logging.getLogger(__name__)

CHANNEL = "saga_events"


@dataclass(frozen=True)
class SagaTunables:
    # リースは最も長いステップ（課金リトライ）より長くする
    lease_seconds: float = 60.0
    step_retry: RetryPolicy = field(default_factory=RetryPolicy)
    payment_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(max_attempts=4, deadline=20.0)
    )


class CheckoutSagaOrchestrator:
    """チェックアウト Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        stock: StockClient,
        payments: PaymentClient,
        orders: OrderClient,
        snapshots: CartSnapshotProvider,
        redis: aioredis.Redis,
        tunables: SagaTunables | None = None,
    ):
        self.session_factory = session_factory
        self.stock = stock
        self.payments = payments
        self.orders = orders
        self.snapshots = snapshots
        self.redis = redis
        self.tunables = tunables or SagaTunables()
        self._handlers = {
            SagaStep.STARTED: self._snapshot_cart,
            SagaStep.INVENTORY_RESERVING: self._reserve_inventory,
            SagaStep.INVENTORY_RESERVED: self._charge_payment,
            SagaStep.PAYMENT_CHARGED: self._create_order,
            SagaStep.ORDER_CREATED: self._clear_cart,
            SagaStep.CART_CLEARED: self._complete,
            SagaStep.COMPENSATING: self._compensate,
        }

    # ── エントリーポイント ──────────────────────

    async def start_checkout(
        self, customer_id: str, idempotency_key: str | None = None
    ) -> CheckoutResult:
        """
        チェックアウトを開始する。

        同じ idempotency_key の2回目以降の呼び出しは、終端済みなら記録された結果を返し、
        途中なら記録されたステップから再開する。キーが無ければ
        customer_id とカート内容のハッシュから導出する。
        """
        snapshot = None
        if idempotency_key is None:
            snapshot = await self._take_snapshot(customer_id)
            idempotency_key = derive_idempotency_key(customer_id, snapshot)

        owner = uuid.uuid4().hex
        async with self.session_factory() as session:
            record, created = await saga_store.create_if_absent(
                session,
                idempotency_key,
                customer_id,
                self.snapshots.currency,
                owner=owner,
                lease_seconds=self.tunables.lease_seconds,
            )

        if record.customer_id != customer_id:
            raise IdempotencyKeyReused(
                f"idempotency key {idempotency_key} belongs to another customer",
                saga_id=record.saga_id,
            )
        if record.is_terminal:
            logger.info("Saga %s replayed (%s)", record.saga_id, record.step.value)
            return self._outcome(record)

        if created:
            logger.info("Saga %s started for customer %s", record.saga_id, customer_id)
        else:
            logger.info("Saga %s resumed at %s", record.saga_id, record.step.value)
        record = await self._drive(record.saga_id, snapshot if created else None, owner)
        return self._outcome(record)

    async def resume(self, saga_id: str) -> CheckoutResult:
        """記録されたステップから Saga を再開する（クラッシュ後の回復用）"""
        async with self.session_factory() as session:
            record = await saga_store.get_saga(session, saga_id)
        if record is None:
            raise SagaNotFound(saga_id)
        if not record.is_terminal:
            record = await self._drive(saga_id)
        return self._outcome(record)

    # ── 実行ループ ──────────────────────────────

    async def _drive(
        self,
        saga_id: str,
        snapshot: CartSnapshot | None = None,
        owner: str | None = None,
    ) -> SagaRecord:
        owner = owner or uuid.uuid4().hex
        async with self.session_factory() as session:
            record = await saga_store.claim(
                session, saga_id, owner, self.tunables.lease_seconds
            )
            if record is None:
                current = await saga_store.get_saga(session, saga_id)
        if record is None:
            if current is not None and current.is_terminal:
                return current
            raise CheckoutInProgress(
                f"saga {saga_id} is being processed by another runner", saga_id
            )

        try:
            while not record.is_terminal:
                handler = self._handlers[record.step]
                next_record = await handler(record, owner, snapshot)
                if next_record is None:
                    # このステップはまだ結論が出ない。リカバリで再開する
                    break
                record = next_record
        except OwnershipLost:
            logger.warning("Saga %s: ownership lost at %s", saga_id, record.step.value)
            async with self.session_factory() as session:
                current = await saga_store.get_saga(session, saga_id)
            if current is not None and current.is_terminal:
                return current
            raise CheckoutInProgress(
                f"saga {saga_id} is being processed by another runner", saga_id
            )
        finally:
            if not record.is_terminal:
                async with self.session_factory() as session:
                    await saga_store.release_lease(session, saga_id, owner)
        return record

    def _outcome(self, record: SagaRecord) -> CheckoutResult:
        if record.step is SagaStep.COMPLETED:
            return CheckoutResult(
                saga_id=record.saga_id,
                order_id=record.order_id,
                status=record.step.value,
                total=record.total,
                currency=record.currency,
            )
        if record.step in (SagaStep.FAILED, SagaStep.COMPENSATING):
            raise error_from_code(record.error_code, record.saga_id, record.error_detail)
        raise CheckoutInProgress(
            f"saga {record.saga_id} is at {record.step.value}", record.saga_id
        )

    # ── ステップ ────────────────────────────────

    async def _take_snapshot(self, customer_id: str) -> CartSnapshot:
        try:
            return await call_with_retry(
                self.tunables.step_retry, self.snapshots.snapshot, customer_id
            )
        except CollaboratorError as e:
            raise CheckoutFailed(f"cart unavailable: {e}") from e

    async def _snapshot_cart(self, record, owner, snapshot):
        if snapshot is None:
            try:
                snapshot = await call_with_retry(
                    self.tunables.step_retry, self.snapshots.snapshot, record.customer_id
                )
            except EmptyCart:
                return await self._fail(record, owner, "SnapshotCart", EmptyCart.code)
            except CollaboratorError as e:
                return await self._fail(
                    record, owner, "SnapshotCart", CheckoutFailed.code, str(e)
                )

        return await self._advance(
            record,
            owner,
            SagaStep.INVENTORY_RESERVING,
            "SnapshotCart",
            detail={"snapshot_id": snapshot.snapshot_id, "total": snapshot.total},
            snapshot=snapshot.model_dump_json(),
            total=snapshot.total,
            currency=snapshot.currency,
            reservation_id=f"rsv-{record.saga_id}",
            payment_key=record.saga_id,
        )

    async def _reserve_inventory(self, record, owner, _snapshot):
        entries = [
            {"sku": line.sku, "quantity": line.quantity}
            for line in record.snapshot.lines
        ]
        try:
            reservation = await call_with_retry(
                self.tunables.step_retry,
                self.stock.reserve,
                record.reservation_id,
                record.saga_id,
                entries,
            )
        except InsufficientStock as e:
            # 予約は全か無か。取り消すものは無い
            return await self._fail(
                record, owner, "ReserveInventory", InsufficientStock.code, e.detail
            )
        except CollaboratorError as e:
            return await self._start_compensation(
                record, owner, "ReserveInventory", CheckoutFailed.code, str(e)
            )

        if reservation["state"] != "HELD":
            return await self._start_compensation(
                record,
                owner,
                "ReserveInventory",
                CheckoutFailed.code,
                f"reservation {record.reservation_id} is {reservation['state']}",
            )
        return await self._advance(
            record,
            owner,
            SagaStep.INVENTORY_RESERVED,
            "ReserveInventory",
            detail={"reservation_id": record.reservation_id},
        )

    async def _charge_payment(self, record, owner, _snapshot):
        try:
            attempt = await call_with_retry(
                self.tunables.payment_retry,
                self.payments.charge,
                record.payment_key,
                record.total,
                record.currency,
            )
        except CollaboratorError as e:
            # 課金中のタイムアウトは「失敗」とみなさない。同じキーで結果を照会してから決める
            logger.warning("Saga %s: charge retries exhausted: %s", record.saga_id, e)
            try:
                attempt = await call_with_retry(
                    self.tunables.step_retry, self.payments.get_attempt, record.payment_key
                )
            except CollaboratorError as lookup_error:
                await self._note_error(
                    record, owner, "ChargePayment", f"{e}; status unavailable: {lookup_error}"
                )
                return None
            if attempt is not None and attempt["outcome"] == "PENDING":
                # プロバイダ呼び出しが進行中。結論が出るまで INVENTORY_RESERVED で待つ
                await self._note_error(
                    record, owner, "ChargePayment", f"charge {record.payment_key} is PENDING"
                )
                return None
            if attempt is None or attempt["outcome"] not in ("SUCCEEDED", "DECLINED"):
                return await self._start_compensation(
                    record, owner, "ChargePayment", CheckoutFailed.code, str(e)
                )

        if attempt["outcome"] == "DECLINED":
            return await self._start_compensation(
                record, owner, "ChargePayment", PaymentDeclined.code, attempt.get("reason")
            )
        return await self._advance(
            record,
            owner,
            SagaStep.PAYMENT_CHARGED,
            "ChargePayment",
            detail={"provider_ref": attempt["provider_ref"]},
            provider_ref=attempt["provider_ref"],
        )

    async def _create_order(self, record, owner, _snapshot):
        """
        予約を確定して注文を作る。どちらも冪等なので、このステップだけを何度やり直してもよい。

        一時的な失敗が続く場合は PAYMENT_CHARGED のまま止め、リカバリで前進させる。
        """
        try:
            reservation = await call_with_retry(
                self.tunables.step_retry, self.stock.commit, record.reservation_id
            )
        except CollaboratorError as e:
            await self._note_error(record, owner, "CommitReservation", str(e))
            return None

        if reservation["state"] != "COMMITTED":
            # 予約が期限切れで解放された。課金を取り消す
            return await self._start_compensation(
                record,
                owner,
                "CommitReservation",
                CheckoutFailed.code,
                f"reservation {record.reservation_id} is {reservation['state']}",
            )

        lines = [
            {
                "sku": line.sku,
                "name": line.name,
                "unit_price": str(line.unit_price),
                "quantity": line.quantity,
            }
            for line in record.snapshot.lines
        ]
        try:
            order = await call_with_retry(
                self.tunables.step_retry,
                self.orders.create_if_absent,
                record.saga_id,
                record.customer_id,
                lines,
                record.total,
                record.currency,
                "PAID",
            )
        except CollaboratorError as e:
            await self._note_error(record, owner, "CreateOrder", str(e))
            return None

        return await self._advance(
            record,
            owner,
            SagaStep.ORDER_CREATED,
            "CreateOrder",
            detail={"order_id": order["order_id"]},
            order_id=order["order_id"],
        )

    async def _clear_cart(self, record, owner, _snapshot):
        try:
            await call_with_retry(
                self.tunables.step_retry, self.snapshots.clear, record.customer_id
            )
        except CollaboratorError as e:
            # カートが残っても注文の正しさには影響しない
            logger.warning("Saga %s: failed to clear cart: %s", record.saga_id, e)
            record = await self._advance(
                record, owner, SagaStep.COMPLETED, "ClearCart", "FAILED", str(e)
            )
            await self._publish_saga_event("SagaCompleted", record)
            return record

        return await self._advance(record, owner, SagaStep.CART_CLEARED, "ClearCart")

    async def _complete(self, record, owner, _snapshot):
        record = await self._advance(record, owner, SagaStep.COMPLETED, "CompleteCheckout")
        logger.info("Saga %s completed: order %s", record.saga_id, record.order_id)
        await self._publish_saga_event("SagaCompleted", record)
        return record

    async def _compensate(self, record, owner, _snapshot):
        """
        補償トランザクション: 返金 → 在庫解放 → FAILED

        どれかが失敗したら COMPENSATING のまま last_error を記録し、
        リカバリが成功するまで繰り返す。課金が PENDING の間も FAILED にはしない。
        """
        provider_ref = record.provider_ref
        try:
            if provider_ref is None and record.payment_key:
                attempt = await call_with_retry(
                    self.tunables.step_retry, self.payments.get_attempt, record.payment_key
                )
                if attempt is not None and attempt["outcome"] == "PENDING":
                    await self._note_error(
                        record, owner, "Compensate", f"charge {record.payment_key} is PENDING"
                    )
                    return None
                if attempt is not None and attempt["outcome"] == "SUCCEEDED":
                    provider_ref = attempt["provider_ref"]
            if provider_ref is not None:
                await call_with_retry(
                    self.tunables.step_retry, self.payments.refund, provider_ref
                )
            if record.reservation_id:
                await call_with_retry(
                    self.tunables.step_retry, self.stock.release, record.reservation_id
                )
        except CollaboratorError as e:
            logger.warning("Saga %s: compensation failed: %s", record.saga_id, e)
            await self._note_error(record, owner, "Compensate", str(e))
            return None

        record = await self._advance(
            record,
            owner,
            SagaStep.FAILED,
            "Compensate",
            detail={"refunded": provider_ref, "released": record.reservation_id},
        )
        logger.info("Saga %s compensated (%s)", record.saga_id, record.error_code)
        await self._publish_saga_event("SagaFailed", record)
        return record

    # ── 遷移ヘルパ ──────────────────────────────

    async def _advance(
        self,
        record: SagaRecord,
        owner: str,
        to_step: SagaStep,
        action: str,
        status: str = "COMPLETED",
        detail=None,
        **fields,
    ) -> SagaRecord:
        async with self.session_factory() as session:
            return await saga_store.advance(
                session,
                record.saga_id,
                owner,
                record.step,
                to_step,
                action,
                status,
                detail,
                lease_seconds=self.tunables.lease_seconds,
                **fields,
            )

    async def _fail(self, record, owner, action, code, detail=None) -> SagaRecord:
        record = await self._advance(
            record,
            owner,
            SagaStep.FAILED,
            action,
            "FAILED",
            detail,
            error_code=code,
            error_detail=detail,
        )
        logger.info("Saga %s failed: %s %s", record.saga_id, code, detail or "")
        await self._publish_saga_event("SagaFailed", record)
        return record

    async def _start_compensation(
        self, record, owner, action, code, detail=None
    ) -> SagaRecord:
        record = await self._advance(
            record,
            owner,
            SagaStep.COMPENSATING,
            action,
            "FAILED",
            detail,
            error_code=code,
            error_detail=detail,
        )
        logger.info("Saga %s compensating: %s", record.saga_id, code)
        await self._publish_saga_event("SagaCompensating", record)
        return record

    async def _note_error(self, record, owner, action, message) -> None:
        async with self.session_factory() as session:
            await saga_store.note_error(session, record.saga_id, owner, action, message)

    async def _publish_saga_event(self, event_type: str, record: SagaRecord) -> None:
        """Saga のイベントを Redis に発行する。"""
        async with self.session_factory() as session:
            saga_log = await saga_store.load_log(session, record.saga_id)
        await self.redis.publish(
            CHANNEL,
            json.dumps(
                {
                    "event_type": event_type,
                    "saga_id": record.saga_id,
                    "customer_id": record.customer_id,
                    "order_id": record.order_id,
                    "error_code": record.error_code,
                    "saga_log": saga_log,
                },
                default=str,
            ),
        )


