"""
Order Service — 例外の分類

  (a) インフラの一時的障害   → リトライ後 UpstreamUnavailable
  (b) ビジネスルール違反     → リトライしない。違反したルール名を返す
  (c) 整合性違反             → 単一トランザクションで構造的に起こり得ない
  (d) 重複配送               → エラーではない (レプリケータ側で無視)
"""


class OrderError(Exception):
    """Order Service の基底例外"""

    rule = "OrderError"
    status_code = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        body = {"rule": self.rule, "detail": self.message}
        if self.field:
            body["field"] = self.field
        return body


# ── (b) ビジネスルール違反 ────────────────────────


class BusinessRuleViolation(OrderError):
    status_code = 409


class EmptyCart(BusinessRuleViolation):
    rule = "EmptyCart"
    status_code = 422

    def __init__(self) -> None:
        super().__init__("Cart has no items", field="cart.items")


class ProductUnavailable(BusinessRuleViolation):
    rule = "ProductUnavailable"
    status_code = 422

    def __init__(self, product_id: str) -> None:
        super().__init__(
            f"Product {product_id} is not available in the catalog",
            field=f"items[{product_id}]",
        )
        self.product_id = product_id


class InsufficientStock(BusinessRuleViolation):
    rule = "InsufficientStock"

    def __init__(
        self, product_id: str, requested: int, available: int | None = None
    ) -> None:
        detail = f"Product {product_id} does not have enough stock: requested={requested}"
        if available is not None:
            detail += f", available={available}"
        super().__init__(detail, field=f"items[{product_id}].quantity")
        self.product_id = product_id
        self.requested = requested
        self.available = available


class MixedCurrency(BusinessRuleViolation):
    rule = "MixedCurrency"
    status_code = 422

    def __init__(self, currencies: set[str]) -> None:
        super().__init__(
            f"Cart mixes currencies: {', '.join(sorted(currencies))}",
            field="items.price.currency",
        )
        self.currencies = currencies


class InvalidStateTransition(BusinessRuleViolation):
    rule = "InvalidStateTransition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Order cannot move from {current} to {target}", field="status"
        )
        self.current = current
        self.target = target


# ── アクセス / 競合 ───────────────────────────────


class OrderNotFound(OrderError):
    rule = "OrderNotFound"
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found", field="order_id")


class Forbidden(OrderError):
    rule = "Forbidden"
    status_code = 403

    def __init__(self) -> None:
        super().__init__("You do not have access to this order")


class ConcurrentModification(OrderError):
    rule = "ConcurrentModification"
    status_code = 409

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} was modified concurrently, retry")


# ── (a) インフラ障害 ──────────────────────────────


class UpstreamUnavailable(OrderError):
    """
    リトライ上限に達した。呼び出し元には内部アドレスを出さず、
    サービス名だけを返す。
    """

    rule = "UpstreamUnavailable"
    status_code = 503

    def __init__(self, service: str) -> None:
        super().__init__(f"{service} is temporarily unavailable, try again later")
        self.service = service


class SagaTimeout(OrderError):
    rule = "SagaTimeout"
    status_code = 504

    def __init__(self) -> None:
        super().__init__("Order placement did not finish in time, try again later")
