"""
Saga Service — エラー定義

呼び出し側に返すエラーは3種類に分かれる:

  業務的な終端エラー  EmptyCart / InsufficientStock / PaymentDeclined
                      すぐに返し、Saga はリトライしない
  一時的なエラー      CollaboratorError (タイムアウト・通信断・5xx)
                      発生したステップで回数を限ってリトライする
  致命的なエラー      リトライ上限・回復不能な失敗 → 補償して CheckoutFailed
"""


class CheckoutError(Exception):
    code = "CheckoutFailed"
    status_code = 500

    def __init__(
        self,
        message: str = "",
        saga_id: str | None = None,
        detail: str | None = None,
    ):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.saga_id = saga_id
        self.detail = detail

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message, "saga_id": self.saga_id}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class EmptyCart(CheckoutError):
    code = "EmptyCart"
    status_code = 422


class InsufficientStock(CheckoutError):
    code = "InsufficientStock"
    status_code = 409

    @property
    def sku(self) -> str | None:
        return self.detail

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["sku"] = self.detail
        return body


class PaymentDeclined(CheckoutError):
    code = "PaymentDeclined"
    status_code = 402


class CheckoutFailed(CheckoutError):
    code = "CheckoutFailed"
    status_code = 502


class IdempotencyKeyReused(CheckoutError):
    """別の顧客が同じ idempotency_key を使った"""
    code = "IdempotencyKeyReused"
    status_code = 409


class CheckoutInProgress(CheckoutError):
    """このリクエスト内では結論が出ない。saga_id でステータスを照会してもらう。"""
    code = "CheckoutInProgress"
    status_code = 202


ERRORS_BY_CODE: dict[str, type[CheckoutError]] = {
    cls.code: cls
    for cls in (EmptyCart, InsufficientStock, PaymentDeclined, CheckoutFailed)
}


def error_from_code(
    code: str | None, saga_id: str, detail: str | None = None
) -> CheckoutError:
    """SagaRecord に記録されたエラーコードから、呼び出し側に返す例外を復元する。"""
    error_cls = ERRORS_BY_CODE.get(code or "", CheckoutFailed)
    return error_cls(f"checkout {saga_id} failed: {error_cls.code}", saga_id, detail)


# ── コラボレータ呼び出しのエラー ────────────────


class CollaboratorError(Exception):
    """一時的な失敗。同じ冪等キーでリトライしてよい。"""


class PaymentErrored(CollaboratorError):
    """決済プロバイダが ERRORED を返した"""


class OwnershipLost(Exception):
    """SagaRecord の所有権（リース）を失った。別のランナーが進めている。"""


class SagaNotFound(Exception):
    def __init__(self, saga_id: str):
        super().__init__(f"saga {saga_id} not found")
        self.saga_id = saga_id
