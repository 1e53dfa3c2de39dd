"""
Order Service — Message Channel (Redis Streams)

Redis Pub/Sub は fire-and-forget で、購読者が落ちている間のメッセージは失われる。
ここでは Redis Streams を使い、宛先 (destination) ごとに 1 つのストリームへ XADD する。
ストリーム内の順序は追記順なので、同じ集約 ID のメッセージの順序は保たれる。

ストリームのエントリ:
    key            パーティションキー (= aggregateId)
    eventType      メッセージ種別 (OrderConfirmed など)
    aggregateType  集約の種類 (Order)
    aggregateId    集約 ID (注文 ID)
    body           JSON 本文
"""

from dataclasses import dataclass, field
from typing import Protocol

import redis.asyncio as aioredis


@dataclass(frozen=True)
class OutboundMessage:
    destination: str
    partition_key: str
    event_type: str
    aggregate_type: str
    aggregate_id: str
    body: str

    @property
    def headers(self) -> dict[str, str]:
        return {
            "eventType": self.event_type,
            "aggregateType": self.aggregate_type,
            "aggregateId": self.aggregate_id,
        }

    def to_fields(self) -> dict[str, str]:
        return {"key": self.partition_key, **self.headers, "body": self.body}


@dataclass(frozen=True)
class InboundMessage:
    source: str
    message_id: str
    key: str | None
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def event_type(self) -> str | None:
        return self.headers.get("eventType")

    @classmethod
    def from_fields(cls, source: str, message_id: str, fields: dict[str, str]) -> "InboundMessage":
        headers = {k: v for k, v in fields.items() if k not in ("key", "body")}
        return cls(
            source=source,
            message_id=message_id,
            key=fields.get("key"),
            headers=headers,
            body=fields.get("body", ""),
        )


class MessageChannel(Protocol):
    async def publish(self, message: OutboundMessage) -> None:
        """送信に失敗したら例外を送出する。"""
        ...


class RedisStreamChannel:
    def __init__(self, redis: aioredis.Redis, max_len: int | None = 100_000):
        self.redis = redis
        self.max_len = max_len

    async def publish(self, message: OutboundMessage) -> None:
        await self.redis.xadd(
            message.destination,
            message.to_fields(),
            maxlen=self.max_len,
            approximate=True,
        )
