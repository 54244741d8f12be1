"""
Order Service — 注文 Saga (オーケストレーション型)

1 リクエストにつき 1 インスタンス。グローバルなロックは使わず、
失敗時は補償トランザクション (在庫確保の解放) で整合性を保つ。

  ┌──────────────────────────────────────────────────────────┐
  │  COLLECTING  カートを取得 (空なら EmptyCart)              │
  │  PRICING     全商品を 1 回で見積り、明細と金額を確定       │
  │  RESERVING   明細ごとに在庫を一時確保 (TTL 付き)           │
  │              └─ 失敗 → 確保済みをすべて解放して ABORTED    │
  │  PERSISTING  Order + OrderCreated(Outbox) を 1 トランザクションで保存 │
  │              └─ 失敗 → 確保済みをすべて解放して ABORTED    │
  │  PUBLISHED   確保を確定 (恒久的な在庫引き当て) に切り替え  │
  └──────────────────────────────────────────────────────────┘

COLLECTING〜RESERVING には全体の期限、PERSISTING には書き込みの期限があり、
超えた場合もビジネスルール違反と同じく補償してから SagaTimeout を返す。
確保は戻ってきた時点で記録するので、途中で取り消されても補償から漏れない。
RESERVING と PERSISTING の間でプロセスが落ちた場合、
確保は TTL 切れでカタログ側が自動的に解放する。
"""

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from services.common.events import utcnow

from . import store
from .accessors import CartAccessor, CatalogAccessor, Reservation
from .domain import Order, OrderLine, OrderRequest, PriceBreakdown, price_cart
from .errors import EmptyCart, InsufficientStock, SagaTimeout

logger = logging.getLogger(__name__)


class SagaState(str, enum.Enum):
    COLLECTING = "COLLECTING"
    PRICING = "PRICING"
    RESERVING = "RESERVING"
    PERSISTING = "PERSISTING"
    PUBLISHED = "PUBLISHED"
    ABORTED = "ABORTED"


@dataclass
class SagaResult:
    order: Order
    saga_log: list[dict] = field(default_factory=list)
    replayed: bool = False


class PlaceOrderSaga:
    """注文確定 Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cart: CartAccessor,
        catalog: CatalogAccessor,
        tax_rate: Decimal,
        shipping_fee: Decimal,
        reservation_ttl_seconds: int = 300,
        deadline_seconds: float = 20.0,
        persist_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.cart = cart
        self.catalog = catalog
        self.tax_rate = tax_rate
        self.shipping_fee = shipping_fee
        self.reservation_ttl_seconds = reservation_ttl_seconds
        self.deadline_seconds = deadline_seconds
        self.persist_timeout_seconds = persist_timeout_seconds
        self.clock = clock

        self.state = SagaState.COLLECTING
        self.saga_log: list[dict] = []
        self.reservations: list[Reservation] = []

    async def execute(self, request: OrderRequest) -> SagaResult:
        """
        Saga を実行する。

        ビジネスルール違反とインフラ障害はどちらも例外として呼び出し元へ返すが、
        その前に必ず確保済みの在庫を解放する。
        """
        if request.idempotency_key:
            existing = await self._find_existing(request)
            if existing:
                logger.info(
                    "Replaying order %s for idempotency key %s",
                    existing.id,
                    request.idempotency_key,
                )
                return SagaResult(existing, self.saga_log, replayed=True)

        order_id = str(uuid4())
        try:
            try:
                async with asyncio.timeout(self.deadline_seconds):
                    lines, price = await self._collect_and_price(request)
                    await self._reserve(order_id, lines)
            except TimeoutError as e:
                raise SagaTimeout() from e

            order = await self._persist(order_id, request, lines, price)
        except (Exception, asyncio.CancelledError) as e:
            await self._abort(e)
            raise

        if order.id != order_id:
            # 同じ冪等キーの並行リクエストが先に保存した
            await self._compensate()
            return SagaResult(order, self.saga_log, replayed=True)

        await self._commit_reservations()
        self._enter(SagaState.PUBLISHED)
        return SagaResult(order, self.saga_log)

    # ── ステップ ──────────────────────────────────

    async def _collect_and_price(
        self, request: OrderRequest
    ) -> tuple[list[OrderLine], PriceBreakdown]:
        self._enter(SagaState.COLLECTING)
        self._log("FetchCart", "EXECUTING")
        cart = await self.cart.fetch_cart(request.user_id)
        if not cart:
            raise EmptyCart()
        self._complete()

        self._enter(SagaState.PRICING)
        self._log("QuoteProducts", "EXECUTING")
        quotes = await self.catalog.quote_products(cart.product_ids)
        lines, price = price_cart(cart, quotes, self.tax_rate, self.shipping_fee)
        self._complete()
        return lines, price

    async def _reserve(self, order_id: str, lines: list[OrderLine]) -> None:
        self._enter(SagaState.RESERVING)
        self._log("ReserveStock", "EXECUTING")

        demand: dict[str, int] = {}
        for line in lines:
            demand[line.product_id] = demand.get(line.product_id, 0) + line.quantity

        results = await asyncio.gather(
            *(
                self._reserve_one(order_id, product_id, quantity)
                for product_id, quantity in demand.items()
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        self._complete()

    async def _reserve_one(
        self, order_id: str, product_id: str, quantity: int
    ) -> Reservation:
        reservation = await self.catalog.reserve(
            product_id, quantity, order_id, self.reservation_ttl_seconds
        )
        if reservation is None:
            raise InsufficientStock(product_id, quantity)
        # 他の確保を待たずに記録する (期限切れの取消しが後から来ても解放できる)
        self.reservations.append(reservation)
        return reservation

    async def _persist(
        self,
        order_id: str,
        request: OrderRequest,
        lines: list[OrderLine],
        price: PriceBreakdown,
    ) -> Order:
        self._enter(SagaState.PERSISTING)
        self._log("PersistOrder", "EXECUTING")
        order = Order.place(request, lines, price, self.clock(), order_id=order_id)
        try:
            async with asyncio.timeout(self.persist_timeout_seconds):
                async with self.session_factory() as session:
                    async with session.begin():
                        await store.insert_order(session, order)
        except TimeoutError as e:
            persisted = await self._find_persisted(order_id)
            if persisted is None:
                raise SagaTimeout() from e
            order = persisted
        except IntegrityError:
            if not request.idempotency_key:
                raise
            existing = await self._find_existing(request)
            if existing is None:
                raise
            self._log("PersistOrder", "SKIPPED", error="duplicate idempotency key")
            return existing
        self._complete()
        logger.info(
            "Order %s persisted for user %s: total %s %s",
            order.id,
            order.user_id,
            order.total.amount,
            order.total.currency,
        )
        return order

    async def _commit_reservations(self) -> None:
        """
        一時確保を恒久的な引き当てに切り替える。

        注文は既に保存済みなので、ここでの失敗で注文を取り消すことはしない。
        """
        self._log("CommitReservations", "EXECUTING")
        results = await asyncio.gather(
            *(self.catalog.commit(r.id) for r in self.reservations),
            return_exceptions=True,
        )
        failed = [
            r.id for r, result in zip(self.reservations, results)
            if isinstance(result, BaseException)
        ]
        if failed:
            logger.error("Could not commit reservations %s", ", ".join(failed))
            self.saga_log[-1]["status"] = "FAILED"
            self.saga_log[-1]["error"] = f"uncommitted reservations: {failed}"
        else:
            self._complete()

    # ── 補償 ──────────────────────────────────────

    async def _abort(self, error: BaseException) -> None:
        failed_in = self.state
        if self.saga_log and self.saga_log[-1]["status"] == "EXECUTING":
            self.saga_log[-1]["status"] = "FAILED"
            self.saga_log[-1]["error"] = str(error) or type(error).__name__
        await self._compensate()
        self._enter(SagaState.ABORTED)
        logger.warning(
            "Order saga aborted in %s: %s", failed_in.value, type(error).__name__
        )

    async def _compensate(self) -> None:
        if not self.reservations:
            return
        self._log("ReleaseStock (COMPENSATING)", "EXECUTING")
        results = await asyncio.gather(
            *(self.catalog.release(r.id) for r in self.reservations),
            return_exceptions=True,
        )
        failed = [
            r.id for r, result in zip(self.reservations, results)
            if isinstance(result, BaseException)
        ]
        if failed:
            # 解放できなかった確保は TTL 切れでカタログ側が戻す
            logger.error("Could not release reservations %s", ", ".join(failed))
            self.saga_log[-1]["status"] = "FAILED"
            self.saga_log[-1]["error"] = f"left to expire: {failed}"
        else:
            self._complete()
        self.reservations = []

    # ── 補助 ──────────────────────────────────────

    async def _find_existing(self, request: OrderRequest) -> Order | None:
        async with self.session_factory() as session:
            return await store.find_by_idempotency_key(
                session, request.user_id, request.idempotency_key
            )

    async def _find_persisted(self, order_id: str) -> Order | None:
        """書き込みが期限切れでも COMMIT 自体は届いている可能性がある。"""
        try:
            async with asyncio.timeout(self.persist_timeout_seconds):
                async with self.session_factory() as session:
                    return await store.load_order(session, order_id)
        except TimeoutError:
            logger.error("Could not confirm whether order %s was persisted", order_id)
            return None

    def _enter(self, state: SagaState) -> None:
        self.state = state
        logger.debug("Order saga -> %s", state.value)

    def _log(self, action: str, status: str, error: str | None = None) -> None:
        entry = {
            "step": len(self.saga_log) + 1,
            "action": action,
            "state": self.state.value,
            "status": status,
            "timestamp": self.clock().isoformat(),
        }
        if error:
            entry["error"] = error
        self.saga_log.append(entry)

    def _complete(self) -> None:
        self.saga_log[-1]["status"] = "COMPLETED"
