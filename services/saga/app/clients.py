"""
Saga Service — コラボレータ HTTP クライアント

Inventory / Payment / Order / Cart の各サービスを httpx で呼び出す。
タイムアウト・通信断・5xx は CollaboratorError（一時的な失敗）に変換し、
409 などの業務的な応答は対応する例外や結果に変換する。
"""

import asyncio
from decimal import Decimal

import httpx

from .errors import CollaboratorError, InsufficientStock, PaymentErrored


class ServiceClient:
    def __init__(self, http: httpx.AsyncClient, timeout: float = 5.0):
        self.http = http
        self.timeout = timeout

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await asyncio.wait_for(
                self.http.request(method, url, **kwargs), timeout=self.timeout
            )
        except (httpx.TransportError, asyncio.TimeoutError) as e:
            raise CollaboratorError(f"{method} {url}: {e!r}") from e
        if resp.status_code >= 500:
            raise CollaboratorError(f"{method} {url}: HTTP {resp.status_code}")
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> dict:
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CollaboratorError(
                f"{resp.request.method} {resp.request.url}: {e.response.text}"
            ) from e
        return resp.json()


class StockClient(ServiceClient):
    """在庫台帳 (Inventory Service)"""

    async def reserve(
        self, reservation_id: str, saga_id: str, entries: list[dict]
    ) -> dict:
        resp = await self._request(
            "POST",
            "/commands/reservations",
            json={
                "reservation_id": reservation_id,
                "saga_id": saga_id,
                "entries": entries,
            },
        )
        if resp.status_code == 409:
            detail = resp.json()["detail"]
            raise InsufficientStock(
                f"insufficient stock for {detail['sku']}", detail=detail["sku"]
            )
        return self._json(resp)

    async def release(self, reservation_id: str) -> dict:
        resp = await self._request(
            "POST",
            f"/commands/reservations/{reservation_id}/release",
            json={"reason": "compensation"},
        )
        return self._json(resp)

    async def commit(self, reservation_id: str) -> dict:
        resp = await self._request(
            "POST", f"/commands/reservations/{reservation_id}/commit"
        )
        return self._json(resp)


class PaymentClient(ServiceClient):
    """決済 (Payment Service)"""

    async def charge(self, idempotency_key: str, amount: Decimal, currency: str) -> dict:
        """
        課金する。ERRORED は PaymentErrored として送出し、
        SUCCEEDED / DECLINED は結果としてそのまま返す。
        """
        resp = await self._request(
            "POST",
            "/commands/payments/charge",
            json={
                "idempotency_key": idempotency_key,
                "amount": str(amount),
                "currency": currency,
            },
        )
        attempt = self._json(resp)
        if attempt["outcome"] in ("ERRORED", "PENDING"):
            raise PaymentErrored(
                f"charge {idempotency_key} {attempt['outcome']}: {attempt.get('reason')}"
            )
        return attempt

    async def get_attempt(self, idempotency_key: str) -> dict | None:
        resp = await self._request("GET", f"/queries/payments/{idempotency_key}")
        if resp.status_code == 404:
            return None
        return self._json(resp)

    async def refund(self, provider_ref: str) -> dict:
        resp = await self._request(
            "POST", "/commands/payments/refund", json={"provider_ref": provider_ref}
        )
        result = self._json(resp)
        if result["outcome"] != "SUCCEEDED":
            raise PaymentErrored(f"refund {provider_ref}: {result.get('reason')}")
        return result


class OrderClient(ServiceClient):
    """注文ストア (Order Service)"""

    async def create_if_absent(
        self,
        saga_id: str,
        customer_id: str,
        lines: list[dict],
        total: Decimal,
        currency: str,
        status: str = "PAID",
    ) -> dict:
        resp = await self._request(
            "POST",
            "/commands/orders",
            json={
                "saga_id": saga_id,
                "customer_id": customer_id,
                "lines": lines,
                "total": str(total),
                "currency": currency,
                "status": status,
            },
        )
        return self._json(resp)


class CartClient(ServiceClient):
    """カート (Cart Service)"""

    async def read_cart(self, customer_id: str) -> list[dict]:
        resp = await self._request("GET", f"/queries/carts/{customer_id}")
        return self._json(resp)["lines"]

    async def clear_cart(self, customer_id: str) -> None:
        resp = await self._request("POST", f"/commands/carts/{customer_id}/clear")
        self._json(resp)
