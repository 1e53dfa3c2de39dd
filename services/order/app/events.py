"""
Order Service — イベント / コマンド定義

チャネル上のメッセージは camelCase の JSON。
送信するもの (Outbox 経由):
    OrderCreated, PaymentRequested, OrderConfirmed, OrderCancelled,
    NotificationRequested
受信するもの (payments.events):
    PaymentSucceeded, PaymentFailed

受信イベントは境界で一度だけデコードし、閉じた型
(PaymentSucceeded | PaymentFailed | UnknownPaymentEvent) に変換する。
未知の eventType は UnknownPaymentEvent という明示的な受け皿に入る。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """全メッセージ共通: camelCase でシリアライズし、相関 ID を必ず持つ"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_type: ClassVar[str]

    correlation_id: str
    saga_id: str
    timestamp: datetime = Field(default_factory=_now)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ── 送信メッセージ ───────────────────────────────


class OrderLineEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal


class OrderCreated(Message):
    """注文が作成された"""

    event_type: ClassVar[str] = "OrderCreated"

    order_id: str
    user_id: str
    total_amount: Decimal
    shipping_address: str
    order_lines: list[OrderLineEvent]


class PaymentRequested(Message):
    """支払いサービスへの支払い要求コマンド"""

    event_type: ClassVar[str] = "PaymentRequested"

    order_id: str
    user_id: str
    amount: Decimal


class OrderConfirmed(Message):
    """注文が確定された（支払い成功）"""

    event_type: ClassVar[str] = "OrderConfirmed"

    order_id: str
    user_id: str
    payment_id: str


class OrderCancelled(Message):
    """注文がキャンセルされた（支払い失敗 = 補償トランザクション）"""

    event_type: ClassVar[str] = "OrderCancelled"

    order_id: str
    user_id: str
    reason: str


class NotificationRequested(Message):
    """通知サービスへの通知要求コマンド"""

    event_type: ClassVar[str] = "NotificationRequested"

    order_id: str
    user_id: str
    notification_type: str
    message: str


# ── 受信イベント ─────────────────────────────────


class PaymentSucceeded(Message):
    event_type: ClassVar[str] = "PaymentSucceeded"

    payment_id: str
    order_id: str
    user_id: str


class PaymentFailed(Message):
    event_type: ClassVar[str] = "PaymentFailed"

    order_id: str
    user_id: str
    reason: str


@dataclass(frozen=True)
class UnknownPaymentEvent:
    """認識できない eventType。ログに残して捨てる。"""

    event_type: str | None
    body: str


PaymentEvent = PaymentSucceeded | PaymentFailed

_PAYMENT_EVENT_TYPES: dict[str, type[PaymentSucceeded] | type[PaymentFailed]] = {
    PaymentSucceeded.event_type: PaymentSucceeded,
    PaymentFailed.event_type: PaymentFailed,
}


def decode_payment_event(
    event_type: str | None, body: str
) -> PaymentSucceeded | PaymentFailed | UnknownPaymentEvent:
    """
    eventType ヘッダと本文から受信イベントをデコードする。

    本文が壊れている場合は pydantic.ValidationError を送出する。
    """
    model = _PAYMENT_EVENT_TYPES.get(event_type or "")
    if model is None:
        return UnknownPaymentEvent(event_type=event_type, body=body)
    return model.model_validate_json(body)
