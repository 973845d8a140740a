"""
Payment Service — 決済プロバイダ・ゲートウェイ

実際の決済プロバイダのプロトコルは扱わない。ここではプロバイダが満たすべき
契約だけを定義する:

  - charge は idempotency_key ごとに高々1回だけ課金する（プロバイダ側の冪等性）
  - DECLINED は業務的な拒否（リトライしない）
  - ERRORED は一時的な失敗（同じキーでリトライしてよい）

AlwaysSucceedsGateway が既定。DECLINED / ERRORED を注入するテストダブルとして
AlwaysDeclinesGateway と ScriptedGateway を用意する。
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Protocol


class PaymentOutcome(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    DECLINED = "DECLINED"
    ERRORED = "ERRORED"


class GatewayError(Exception):
    """プロバイダとの通信失敗など、結果が得られなかった場合"""


@dataclass
class GatewayResult:
    outcome: PaymentOutcome
    provider_ref: str | None = None
    reason: str | None = None


class PaymentGateway(Protocol):
    async def charge(
        self, idempotency_key: str, amount: Decimal, currency: str
    ) -> GatewayResult: ...

    async def refund(self, provider_ref: str) -> None: ...


def _provider_ref(idempotency_key: str) -> str:
    return "ch_" + uuid.uuid5(uuid.NAMESPACE_URL, idempotency_key).hex[:24]


@dataclass
class AlwaysSucceedsGateway:
    """常に成功するモックプロバイダ。キーごとの課金を記録する。"""

    charges: dict[str, Decimal] = field(default_factory=dict)
    refunds: set[str] = field(default_factory=set)

    async def charge(
        self, idempotency_key: str, amount: Decimal, currency: str
    ) -> GatewayResult:
        self.charges.setdefault(idempotency_key, amount)
        return GatewayResult(PaymentOutcome.SUCCEEDED, _provider_ref(idempotency_key))

    async def refund(self, provider_ref: str) -> None:
        self.refunds.add(provider_ref)


@dataclass
class AlwaysDeclinesGateway:
    reason: str = "card_declined"

    async def charge(
        self, idempotency_key: str, amount: Decimal, currency: str
    ) -> GatewayResult:
        return GatewayResult(PaymentOutcome.DECLINED, reason=self.reason)

    async def refund(self, provider_ref: str) -> None:
        raise GatewayError(f"nothing to refund for {provider_ref}")


@dataclass
class ScriptedGateway:
    """
    charge の結果を順番に再生するテストダブル。

    outcomes を使い切った後は最後の結果を繰り返す。
    "RAISE" を指定すると GatewayError を送出する（通信断の再現）。
    refund_failures 回だけ refund を失敗させる。
    """

    outcomes: list[str]
    refund_failures: int = 0
    charge_calls: int = 0
    charges: dict[str, Decimal] = field(default_factory=dict)
    refunds: set[str] = field(default_factory=set)

    async def charge(
        self, idempotency_key: str, amount: Decimal, currency: str
    ) -> GatewayResult:
        index = min(self.charge_calls, len(self.outcomes) - 1)
        self.charge_calls += 1
        step = self.outcomes[index]
        if step == "RAISE":
            raise GatewayError("provider timeout")
        outcome = PaymentOutcome(step)
        if outcome is PaymentOutcome.SUCCEEDED:
            self.charges.setdefault(idempotency_key, amount)
            return GatewayResult(outcome, _provider_ref(idempotency_key))
        if outcome is PaymentOutcome.DECLINED:
            return GatewayResult(outcome, reason="card_declined")
        return GatewayResult(outcome, reason="provider_unavailable")

    async def refund(self, provider_ref: str) -> None:
        if self.refund_failures > 0:
            self.refund_failures -= 1
            raise GatewayError("refund endpoint unavailable")
        self.refunds.add(provider_ref)


def build_gateway(name: str) -> PaymentGateway:
    gateways = {
        "always_succeeds": AlwaysSucceedsGateway,
        "always_declines": AlwaysDeclinesGateway,
    }
    if name not in gateways:
        raise ValueError(f"Unknown payment gateway: {name}")
    return gateways[name]()
