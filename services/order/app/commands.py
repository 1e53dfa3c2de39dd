"""
Order Service — コマンドハンドラ (Write 側)

注文作成コマンド。以下を 1 トランザクションで行う:

    1. 冪等キーの確認（再送なら保存済みレスポンスを返して終了）
    2. 注文 ID の生成
    3. 注文 (PENDING) と明細の INSERT
    4. Saga (STARTED) の INSERT（注文のスナップショットを payload に保存）
    5. OrderCreated を Outbox に追加
    6. 冪等キーとレスポンスの保存

支払い要求は、この commit の後にオーケストレーターが別トランザクションで出す。
その間にプロセスが落ちた場合、Saga は STARTED のまま残り、
recover_stuck_sagas で検出される。
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from . import order_store, outbox, saga_store
from .aggregate import Order, OrderLine
from .context import RequestContext
from .events import OrderCreated, OrderLineEvent
from .idempotency import IdempotencyGuard
from .order_ids import generate_order_id
from .schemas import CreateOrderRequest, OrderResponse

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Order"


@dataclass(frozen=True)
class PlacementResult:
    response: OrderResponse
    replayed: bool


async def place_order(
    session: AsyncSession,
    guard: IdempotencyGuard,
    request: CreateOrderRequest,
    idempotency_key: str | None,
    ctx: RequestContext,
) -> PlacementResult:
    logger.info("Creating order for user: %s", request.user_id, extra=ctx.log_extra())

    cached = await guard.check_and_replay(session, idempotency_key)
    if cached is not None:
        return PlacementResult(OrderResponse.model_validate_json(cached), replayed=True)

    order_id = await generate_order_id(lambda candidate: order_store.order_exists(session, candidate))
    order = Order.place(
        order_id=order_id,
        user_id=request.user_id,
        shipping_address=request.shipping_address,
        lines=[
            OrderLine(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in request.items
        ],
    )

    await order_store.insert_order(session, order)
    saga = await saga_store.insert_saga(session, order.order_id, order.model_dump_json())
    ctx = ctx.with_saga(saga.saga_id)

    await outbox.save_event(
        session,
        AGGREGATE_TYPE,
        order.order_id,
        OrderCreated.event_type,
        OrderCreated(
            order_id=order.order_id,
            user_id=order.user_id,
            total_amount=order.total_amount,
            shipping_address=order.shipping_address,
            order_lines=[
                OrderLineEvent(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                )
                for line in order.lines
            ],
            correlation_id=ctx.correlation_id,
            saga_id=saga.saga_id,
        ),
    )

    response = OrderResponse.from_order(order, saga_id=saga.saga_id)
    if idempotency_key:
        await guard.store(session, idempotency_key, response.model_dump_json())

    await session.commit()

    logger.info(
        "Order created successfully: %s with sagaId: %s",
        order.order_id,
        saga.saga_id,
        extra=ctx.log_extra(),
    )
    return PlacementResult(response, replayed=False)
