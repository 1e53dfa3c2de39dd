"""
テスト用のファクトリとダブル
"""

from decimal import Decimal

from sqlalchemy import func, select

from services.order.app.channel import OutboundMessage
from services.order.app.schemas import CreateOrderRequest, OrderItemRequest


class RecordingChannel:
    """publish されたメッセージを記録する。fail_when に一致したものは失敗させる。"""

    def __init__(self):
        self.sent: list[OutboundMessage] = []
        self.attempts: list[OutboundMessage] = []
        self.fail_when = lambda message: False

    async def publish(self, message: OutboundMessage) -> None:
        self.attempts.append(message)
        if self.fail_when(message):
            raise ConnectionError(f"broker unavailable for {message.aggregate_id}")
        self.sent.append(message)


def make_request(
    user_id: str = "user-1", quantity: int = 2, unit_price: str = "50.00"
) -> CreateOrderRequest:
    return CreateOrderRequest(
        user_id=user_id,
        shipping_address="1-2-3 Shibuya, Tokyo",
        items=[
            OrderItemRequest(
                product_id="prod-1",
                product_name="Keyboard",
                quantity=quantity,
                unit_price=Decimal(unit_price),
            )
        ],
    )


async def count_rows(session_factory, table) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(table))
        return result.scalar_one()
