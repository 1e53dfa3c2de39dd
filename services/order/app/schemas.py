"""
Order Service — API のリクエスト / レスポンスモデル
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

from .aggregate import Order, OrderStatus

T = TypeVar("T")


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=36)
    product_name: str = Field(min_length=1, max_length=255)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class CreateOrderRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=36)
    shipping_address: str = Field(min_length=1)
    items: list[OrderItemRequest] = Field(min_length=1)


# ── Response Models ──────────────────────────────


class OrderLineResponse(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderResponse(BaseModel):
    order_id: str
    user_id: str
    status: OrderStatus
    total_amount: Decimal
    payment_id: str | None = None
    shipping_address: str
    items: list[OrderLineResponse]
    saga_id: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order, saga_id: str | None = None) -> "OrderResponse":
        return cls(
            order_id=order.order_id,
            user_id=order.user_id,
            status=order.status,
            total_amount=order.total_amount,
            payment_id=order.payment_id,
            shipping_address=order.shipping_address,
            items=[
                OrderLineResponse(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                )
                for line in order.lines
            ],
            saga_id=saga_id,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class ApiResponse(BaseModel, Generic[T]):
    """全エンドポイント共通のレスポンス封筒"""

    success: bool
    message: str
    data: T | None = None
    correlation_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def ok(cls, data: T, message: str, correlation_id: str) -> "ApiResponse[T]":
        return cls(success=True, message=message, data=data, correlation_id=correlation_id)

    @classmethod
    def error(cls, message: str, correlation_id: str, data=None) -> "ApiResponse":
        return cls(success=False, message=message, data=data, correlation_id=correlation_id)
