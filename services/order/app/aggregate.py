"""
Order Service — 注文集約 (Order Aggregate)

注文は明細 (OrderLine) を所有する集約。
合計金額は作成時に明細から一度だけ計算し、以後は再計算しない。

状態遷移:
    PENDING ──▶ PAYMENT_REQUESTED ──▶ CONFIRMED   (支払い成功)
                      │
                      └──────────────▶ CANCELLED   (支払い失敗 = 補償)
    PENDING / PAYMENT_REQUESTED ──▶ FAILED        (Saga の処理エラー)

状態の変更は mark_xxx メソッド経由でのみ行い、
version は Order Store が更新時に +1 する。
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from .errors import InvalidTransition


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAYMENT_REQUESTED = "PAYMENT_REQUESTED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


_ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.PAYMENT_REQUESTED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    },
    OrderStatus.PAYMENT_REQUESTED: {
        OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    },
    OrderStatus.CONFIRMED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.FAILED: set(),
}


class OrderLine(BaseModel):
    """注文明細。id は保存時に採番される。"""

    id: int | None = None
    product_id: str
    product_name: str
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(gt=0)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    order_id: str
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    total_amount: Decimal
    payment_id: str | None = None
    shipping_address: str
    lines: list[OrderLine] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    version: int = 0

    @classmethod
    def place(
        cls,
        order_id: str,
        user_id: str,
        shipping_address: str,
        lines: list[OrderLine],
    ) -> "Order":
        """新しい注文を PENDING で作る。合計 = Σ 単価 × 数量"""
        if not lines:
            raise ValueError("an order needs at least one line")
        now = datetime.now(timezone.utc)
        total = sum((line.line_total for line in lines), Decimal("0"))
        return cls(
            order_id=order_id,
            user_id=user_id,
            status=OrderStatus.PENDING,
            total_amount=total,
            shipping_address=shipping_address,
            lines=lines,
            created_at=now,
            updated_at=now,
        )

    # ── 状態遷移 ─────────────────────────────────────

    def can_transition_to(self, target: OrderStatus) -> bool:
        return target in _ALLOWED_TRANSITIONS[self.status]

    def _transition(self, target: OrderStatus) -> None:
        if not self.can_transition_to(target):
            raise InvalidTransition(
                f"Order {self.order_id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        self.updated_at = datetime.now(timezone.utc)

    def mark_payment_requested(self) -> None:
        self._transition(OrderStatus.PAYMENT_REQUESTED)

    def mark_confirmed(self, payment_id: str) -> None:
        self._transition(OrderStatus.CONFIRMED)
        self.payment_id = payment_id

    def mark_cancelled(self) -> None:
        self._transition(OrderStatus.CANCELLED)

    def mark_failed(self) -> None:
        self._transition(OrderStatus.FAILED)
