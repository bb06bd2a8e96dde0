"""
Placement Service — 注文確定オーケストレーター

カート (商品 ID と数量の並び) を 1 件の注文に変換し、同時に在庫を減らす。

  ┌──────────────────────────────────────────────────────────────┐
  │  0. 入力チェック (空カート・数量 <= 0)   ストアには触れない      │
  │  1. 商品の存在確認          ┐                                  │
  │  2. 在庫数の確認            ┘ 読み取りのみ (副作用なし)          │
  │  3. 在庫引き当て + 価格スナップショット + 注文作成              │
  │     → 1 トランザクション。全部成功するか、何も起きないか         │
  │  4. コミット後に Redis へイベント発行                          │
  └──────────────────────────────────────────────────────────────┘

補償トランザクション (Saga) は使わない。途中で失敗したら DB の
ロールバックだけで元に戻る。

ステップ 3 の条件付き UPDATE は書き込み時点の在庫で再検証するので、
ステップ 2 の後に他の注文が在庫を減らしていた場合はここで失敗する。
そのときは 1 からやり直す (上限 max_attempts 回)。ロック競合
(database is locked / deadlock) も同じく再試行し、使い切ったら Conflict。

締め切り (timeout) はコミット前の処理にだけかける。コミットを始めたら
結果を待つので、確定した注文が Timeout として返ることはない。

同じ商品 ID がカートに複数回現れた場合は数量を合算する
(最初に現れた位置を保つ)。
"""

import asyncio
import json
import logging
import uuid
from collections.abc import Iterable
from decimal import Decimal

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..config import (
    PLACEMENT_MAX_ATTEMPTS,
    PLACEMENT_RETRY_BACKOFF_SECONDS,
    PLACEMENT_TIMEOUT_SECONDS,
)
from ..errors import (
    Conflict,
    InsufficientStock,
    InvalidInput,
    ItemNotFound,
    PlacementTimeout,
    Unavailable,
)
from ..inventory import commands as inventory_commands
from ..inventory import queries as inventory_queries
from ..money import to_cents
from ..order import commands as order_commands
from ..order.aggregate import CartLine, Order, OrderLine

logger = logging.getLogger(__name__)

# ロック競合を示すドライバのエラーメッセージ (SQLite / PostgreSQL)
_CONTENTION_MARKERS = (
    "database is locked",
    "database table is locked",
    "deadlock detected",
    "could not serialize access",
)


def merge_cart_lines(cart_lines: Iterable[CartLine]) -> dict[str, int]:
    """
    カートを商品 ID → 合計数量 にまとめる。

    ストアに問い合わせる前に形式だけを検証する。問題があれば InvalidInput。
    """
    quantities: dict[str, int] = {}
    for line in cart_lines:
        if not line.item_id:
            raise InvalidInput("Each order item needs an item id")
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int):
            raise InvalidInput(
                f"Quantity for {line.item_id} must be an integer", item_id=line.item_id
            )
        if line.quantity < 1:
            raise InvalidInput(
                f"Quantity for {line.item_id} must be at least 1", item_id=line.item_id
            )
        quantities[line.item_id] = quantities.get(line.item_id, 0) + line.quantity

    if not quantities:
        raise InvalidInput("Order items are required")
    return quantities


class _StockChanged(Exception):
    """事前チェックは通ったが、書き込み時の再検証で失敗した。"""

    def __init__(self, cause: InsufficientStock | ItemNotFound):
        super().__init__(cause.message)
        self.cause = cause


def is_contention(exc: DBAPIError) -> bool:
    # イベントストアの (aggregate_id, version) 重複 = 楽観的ロックの衝突
    if isinstance(exc, IntegrityError):
        return True
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _CONTENTION_MARKERS)


class OrderPlacementOrchestrator:
    """注文確定のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis | None = None,
        max_attempts: int = PLACEMENT_MAX_ATTEMPTS,
        timeout: float = PLACEMENT_TIMEOUT_SECONDS,
        retry_backoff: float = PLACEMENT_RETRY_BACKOFF_SECONDS,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.max_attempts = max(1, max_attempts)
        self.timeout = timeout
        self.retry_backoff = retry_backoff

    async def execute(self, buyer_id: str, cart_lines: Iterable[CartLine]) -> Order:
        """
        注文を確定する。

        成功すれば永続化済みの Order を返す。失敗時は StorefrontError の
        サブクラスを送出し、在庫も注文台帳も呼び出し前のまま残る。
        """
        quantities = merge_cart_lines(cart_lines)
        order_id = str(uuid.uuid4())

        deadline = asyncio.get_running_loop().time() + self.timeout

        try:
            order = await self._place_with_retry(order_id, buyer_id, quantities, deadline)
        except PlacementTimeout:
            logger.warning(
                "Order %s for buyer %s timed out after %.2fs", order_id, buyer_id, self.timeout
            )
            raise

        logger.info(
            "Order %s placed for buyer %s: %d line(s), total %s",
            order.id, buyer_id, len(order.lines), order.total,
        )
        await self._publish_events(order)
        return order

    async def _before_deadline(self, deadline: float, coro):
        """コミット前の処理を残り時間の範囲で実行する。超えたら PlacementTimeout。"""
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            coro.close()
            raise PlacementTimeout(
                f"Order placement did not complete within {self.timeout:g}s"
            )
        try:
            return await asyncio.wait_for(coro, timeout=remaining)
        except asyncio.TimeoutError:
            raise PlacementTimeout(
                f"Order placement did not complete within {self.timeout:g}s"
            ) from None

    async def _place_with_retry(
        self,
        order_id: str,
        buyer_id: str,
        quantities: dict[str, int],
        deadline: float,
    ) -> Order:
        for attempt in range(1, self.max_attempts + 1):
            try:
                # ── Step 1-2: 存在確認と在庫確認 (読み取りのみ) ──
                async with self.session_factory() as session:
                    await self._before_deadline(
                        deadline, inventory_queries.check_availability(session, quantities)
                    )

                # ── Step 3: 引き当て + 注文作成 (1 トランザクション) ──
                return await self._reserve_and_persist(order_id, buyer_id, quantities, deadline)

            except _StockChanged as e:
                logger.info(
                    "Stock for %s changed before commit of order %s (attempt %d/%d)",
                    e.cause.item_id, order_id, attempt, self.max_attempts,
                )
            except PoolTimeoutError as e:
                raise PlacementTimeout("Timed out waiting for a database connection") from e
            except DBAPIError as e:
                if not is_contention(e):
                    logger.error("Store unavailable while placing order %s: %s", order_id, e)
                    raise Unavailable("Inventory store is unavailable") from e
                logger.info(
                    "Lock contention on order %s (attempt %d/%d): %s",
                    order_id, attempt, self.max_attempts, e.orig,
                )
            except OSError as e:
                logger.error("Store unreachable while placing order %s: %s", order_id, e)
                raise Unavailable("Inventory store is unreachable") from e

            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_backoff * attempt)

        logger.warning(
            "Order %s gave up after %d attempts due to contention", order_id, self.max_attempts
        )
        raise Conflict(
            f"Order could not be committed after {self.max_attempts} attempts; please retry"
        )

    async def _reserve_and_persist(
        self,
        order_id: str,
        buyer_id: str,
        quantities: dict[str, int],
        deadline: float,
    ) -> Order:
        async with self.session_factory() as session:
            # 失敗・打ち切り時はセッションを閉じるときにロールバックされる
            order = await self._before_deadline(
                deadline, self._stage_order(session, order_id, buyer_id, quantities)
            )

            # コミットは締め切りの対象外
            await asyncio.shield(session.commit())
            return order

    async def _stage_order(
        self,
        session: AsyncSession,
        order_id: str,
        buyer_id: str,
        quantities: dict[str, int],
    ) -> Order:
        """引き当てと注文作成をトランザクション内で実行する (コミットはしない)。"""
        try:
            reserved = await inventory_commands.reserve_stock(session, order_id, quantities)
        except (InsufficientStock, ItemNotFound) as e:
            # 事前チェック後に在庫が変わった → ロールバックして再試行
            raise _StockChanged(e) from e

        lines = [
            OrderLine(
                item_id=sweet_id,
                name=reserved[sweet_id].name,
                quantity=qty,
                unit_price=reserved[sweet_id].price,
            )
            for sweet_id, qty in quantities.items()
        ]
        total = sum((line.subtotal for line in lines), Decimal("0"))

        return await order_commands.create_order(
            session, buyer_id, total, lines, order_id=order_id
        )

    async def _publish_events(self, order: Order) -> None:
        """
        コミット済みの注文を Redis Pub/Sub で通知する。
        注文は確定しているので、発行に失敗してもエラーにはしない。
        """
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                "order_events",
                json.dumps(
                    {
                        "event_type": "OrderPlaced",
                        "data": {
                            "order_id": order.id,
                            "buyer_id": order.buyer_id,
                            "total_cents": to_cents(order.total),
                            "status": order.status.value,
                            "timestamp": order.created_at.isoformat(),
                        },
                    },
                    default=str,
                ),
            )
            for line in order.lines:
                await self.redis.publish(
                    "inventory_events",
                    json.dumps(
                        {
                            "event_type": "StockReserved",
                            "data": {
                                "sweet_id": line.item_id,
                                "order_id": order.id,
                                "quantity": line.quantity,
                            },
                        },
                        default=str,
                    ),
                )
        except RedisError as e:
            logger.warning("Failed to publish events for order %s: %s", order.id, e)
