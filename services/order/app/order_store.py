"""
Order Service — Order Store

注文集約の永続化。呼び出し側のセッション (トランザクション) に参加し、
ここでは commit しない。

更新は version による楽観的ロック:
    UPDATE ... SET version = version + 1 WHERE order_id = :id AND version = :expected
影響行数 0 なら他の書き込みが先にコミットされている → ConcurrencyConflict
"""

from collections import defaultdict

from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Order, OrderLine, OrderStatus
from .db import as_utc, order_lines, orders
from .errors import ConcurrencyConflict, OrderNotFound


async def insert_order(session: AsyncSession, order: Order) -> None:
    await session.execute(
        insert(orders).values(
            order_id=order.order_id,
            user_id=order.user_id,
            status=order.status.value,
            total_amount=order.total_amount,
            payment_id=order.payment_id,
            shipping_address=order.shipping_address,
            created_at=order.created_at,
            updated_at=order.updated_at,
            version=order.version,
        )
    )
    await session.execute(
        insert(order_lines),
        [
            {
                "order_id": order.order_id,
                "product_id": line.product_id,
                "product_name": line.product_name,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
            }
            for line in order.lines
        ],
    )


async def order_exists(session: AsyncSession, order_id: str) -> bool:
    result = await session.execute(
        select(func.count()).select_from(orders).where(orders.c.order_id == order_id)
    )
    return result.scalar_one() > 0


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.order_id == order_id))
    row = result.fetchone()
    if not row:
        return None
    lines = await _load_lines(session, [order_id])
    return _to_order(row, lines[order_id])


async def require_order(session: AsyncSession, order_id: str) -> Order:
    order = await get_order(session, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


async def list_orders_by_user(session: AsyncSession, user_id: str) -> list[Order]:
    """ユーザーの注文を新しい順に返す。"""
    result = await session.execute(
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc(), orders.c.order_id)
    )
    rows = result.fetchall()
    lines = await _load_lines(session, [row.order_id for row in rows])
    return [_to_order(row, lines[row.order_id]) for row in rows]


async def update_order(session: AsyncSession, order: Order) -> Order:
    """
    状態と支払い参照を書き込み、version を 1 つ進める。

    order.version は読み込んだ時点の値 (期待値) であること。
    """
    result = await session.execute(
        update(orders)
        .where(orders.c.order_id == order.order_id)
        .where(orders.c.version == order.version)
        .values(
            status=order.status.value,
            payment_id=order.payment_id,
            updated_at=order.updated_at,
            version=orders.c.version + 1,
        )
    )
    if result.rowcount == 0:
        if not await order_exists(session, order.order_id):
            raise OrderNotFound(order.order_id)
        raise ConcurrencyConflict(
            f"Order {order.order_id} was modified concurrently (expected version {order.version})"
        )
    return order.model_copy(update={"version": order.version + 1})


# ── 行 → 集約 ────────────────────────────────────


async def _load_lines(session: AsyncSession, order_ids: list[str]) -> dict[str, list[OrderLine]]:
    grouped: dict[str, list[OrderLine]] = defaultdict(list)
    if not order_ids:
        return grouped
    result = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id.in_(order_ids))
        .order_by(order_lines.c.id)
    )
    for row in result.fetchall():
        grouped[row.order_id].append(
            OrderLine(
                id=row.id,
                product_id=row.product_id,
                product_name=row.product_name,
                quantity=row.quantity,
                unit_price=row.unit_price,
            )
        )
    return grouped


def _to_order(row, lines: list[OrderLine]) -> Order:
    return Order(
        order_id=row.order_id,
        user_id=row.user_id,
        status=OrderStatus(row.status),
        total_amount=row.total_amount,
        payment_id=row.payment_id,
        shipping_address=row.shipping_address,
        lines=lines,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        version=row.version,
    )
