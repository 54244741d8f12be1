"""
Order Service — Cart / Catalog アクセサ

他サービスへの同期呼び出しはすべてここを通す。

リトライ方針:
  - 接続エラー / タイムアウト / 5xx: 指数バックオフで少数回リトライ (tenacity)
  - 4xx: リトライしない (検証エラーは何度呼んでも結果が同じ)
  - リトライ上限に達したら UpstreamUnavailable (内部アドレスは出さない)
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .domain import CartLine, CartSnapshot, Money, ProductQuote
from .errors import ProductUnavailable, UpstreamUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504})


class TransientUpstreamError(Exception):
    """リトライで回復し得る障害"""


@dataclass(frozen=True)
class Reservation:
    id: str
    product_id: str
    quantity: int


class _UpstreamClient:
    """タイムアウトとリトライ予算を持つ HTTP クライアント"""

    service_name = "upstream"

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        max_attempts: int = 3,
        backoff: float = 0.2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        4xx を含む最終的なレスポンスを返す。解釈は呼び出し側が行う。
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientUpstreamError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=5.0),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return await retrying(self._send, method, path, **kwargs)
        except TransientUpstreamError as e:
            logger.error(
                "%s unavailable after %d attempts: %s",
                self.service_name,
                self.max_attempts,
                e,
            )
            raise UpstreamUnavailable(self.service_name) from e

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            # ConnectError / ReadTimeout などはすべて TransportError
            raise TransientUpstreamError(f"{method} {path}: {e!r}") from e
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientUpstreamError(
                f"{method} {path}: server error {response.status_code}"
            )
        return response

    def _unexpected(self, response: httpx.Response) -> UpstreamUnavailable:
        logger.error(
            "%s answered %s %s with %d",
            self.service_name,
            response.request.method,
            response.request.url.path,
            response.status_code,
        )
        return UpstreamUnavailable(self.service_name)


class CartAccessor(_UpstreamClient):
    service_name = "cart-service"

    async def fetch_cart(self, user_id: str) -> CartSnapshot:
        """カートが無いユーザーは空のスナップショット (エラーではない)。"""
        response = await self._request("GET", f"/queries/carts/{user_id}")
        if response.status_code == 404:
            return CartSnapshot()
        if response.is_error:
            raise self._unexpected(response)
        items = response.json().get("items", [])
        return CartSnapshot(
            tuple(
                CartLine(product_id=str(item["productId"]), quantity=int(item["quantity"]))
                for item in items
            )
        )


class CatalogAccessor(_UpstreamClient):
    service_name = "catalog-service"

    async def quote_products(self, product_ids: list[str]) -> dict[str, ProductQuote]:
        """
        1 回のバッチ呼び出しで見積もる。要求した ID が 1 つでも
        欠けていれば ProductUnavailable (黙って明細を落とさない)。
        """
        response = await self._request(
            "GET", "/queries/products/quote", params=[("ids", pid) for pid in product_ids]
        )
        if response.is_error:
            raise self._unexpected(response)
        body = response.json()

        quotes: dict[str, ProductQuote] = {}
        for product_id in product_ids:
            data = body.get(product_id)
            if data is None:
                raise ProductUnavailable(product_id)
            quotes[product_id] = ProductQuote(
                product_id=product_id,
                price=Money(
                    amount=Decimal(str(data["price"]["amount"])),
                    currency=data["price"]["currency"],
                ),
                stock=int(data["stock"]),
            )
        return quotes

    async def reserve(
        self, product_id: str, quantity: int, order_id: str, ttl_seconds: int
    ) -> Reservation | None:
        """
        在庫を一時確保する。在庫不足 (409) なら None。
        (order_id, product_id) が同じなら何度呼んでも同じ確保を返すので
        タイムアウト後のリトライで二重に確保されることはない。
        """
        response = await self._request(
            "POST",
            "/commands/reservations",
            json={
                "product_id": product_id,
                "quantity": quantity,
                "order_id": order_id,
                "ttl_seconds": ttl_seconds,
            },
        )
        if response.status_code == 409:
            return None
        if response.status_code == 404:
            raise ProductUnavailable(product_id)
        if response.is_error:
            raise self._unexpected(response)
        body = response.json()
        return Reservation(
            id=body["reservation_id"], product_id=product_id, quantity=quantity
        )

    async def release(self, reservation_id: str) -> None:
        response = await self._request(
            "POST", f"/commands/reservations/{reservation_id}/release"
        )
        if response.is_error and response.status_code != 404:
            raise self._unexpected(response)

    async def commit(self, reservation_id: str) -> None:
        response = await self._request(
            "POST", f"/commands/reservations/{reservation_id}/commit"
        )
        if response.is_error:
            raise self._unexpected(response)
