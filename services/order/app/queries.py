"""
Order Service — クエリハンドラ (Read 側)

注文をレスポンスモデルに変換して返す。
saga_id は order_saga から引き当てる。
"""

from sqlalchemy.ext.asyncio import AsyncSession

from . import order_store, saga_store
from .schemas import OrderResponse


async def get_order(session: AsyncSession, order_id: str) -> OrderResponse:
    """注文を取得する。無ければ OrderNotFound。"""
    order = await order_store.require_order(session, order_id)
    saga = await saga_store.find_saga_by_order_id(session, order_id)
    return OrderResponse.from_order(order, saga_id=saga.saga_id if saga else None)


async def list_orders(session: AsyncSession, user_id: str) -> list[OrderResponse]:
    """ユーザーの注文一覧を新しい順に取得する。"""
    responses = []
    for order in await order_store.list_orders_by_user(session, user_id):
        saga = await saga_store.find_saga_by_order_id(session, order.order_id)
        responses.append(OrderResponse.from_order(order, saga_id=saga.saga_id if saga else None))
    return responses
