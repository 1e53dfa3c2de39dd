"""
Order Service — Outbox リレー

outbox_events の未送信メッセージを一定間隔で読み出し、Message Channel に送る。
送信に成功したものだけを、それぞれ別トランザクションで送信済みにする。

- 送信失敗は未送信のまま残り、次の周期で再送される (at-least-once)
- ある集約のメッセージが失敗したら、同じ周期内ではその集約の後続は送らない
  （順序が入れ替わらないように）。他の集約は影響を受けない
- shutdown_event がセットされると、処理中のバッチを終えてからループを抜ける
"""

import asyncio
import logging

from sqlalchemy.orm import sessionmaker

from . import outbox
from .channel import MessageChannel, OutboundMessage
from .config import Settings
from .outbox import OutboxEntry

logger = logging.getLogger(__name__)


class OutboxRelay:
    def __init__(
        self,
        session_factory: sessionmaker,
        channel: MessageChannel,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.interval = settings.outbox_poll_interval
        self.batch_size = settings.outbox_batch_size
        self._destinations = {
            "OrderCreated": settings.orders_events_channel,
            "OrderConfirmed": settings.orders_events_channel,
            "OrderCancelled": settings.orders_events_channel,
            "PaymentRequested": settings.payments_commands_channel,
            "NotificationRequested": settings.notifications_commands_channel,
        }
        self._default_destination = settings.orders_events_channel

    def destination_for(self, event_type: str) -> str:
        return self._destinations.get(event_type, self._default_destination)

    def build_message(self, entry: OutboxEntry) -> OutboundMessage:
        return OutboundMessage(
            destination=self.destination_for(entry.event_type),
            partition_key=entry.aggregate_id,
            event_type=entry.event_type,
            aggregate_type=entry.aggregate_type,
            aggregate_id=entry.aggregate_id,
            body=entry.payload,
        )

    async def publish_events(self) -> int:
        """
        未送信メッセージを送る。送信できた件数を返す。

        batch_size 件ずつ読み出し、未送信が無くなるまで繰り返す。
        失敗した集約は以降の読み出しから外すので、
        その集約の滞留が他の集約の送信を止めることはない。
        """
        blocked: set[str] = set()
        published = 0
        while True:
            async with self.session_factory() as session:
                entries = await outbox.fetch_unpublished(session, self.batch_size, blocked)
            if not entries:
                return published

            logger.debug("Publishing %d outbox events", len(entries))
            for entry in entries:
                if entry.aggregate_id in blocked:
                    continue
                if await self._publish_entry(entry):
                    published += 1
                else:
                    blocked.add(entry.aggregate_id)

    async def _publish_entry(self, entry: OutboxEntry) -> bool:
        """1 件送って送信済みにする。どちらかに失敗したら False。"""
        message = self.build_message(entry)
        try:
            await self.channel.publish(message)
        except Exception:
            logger.exception(
                "Failed to publish outbox event: %s (%s/%s)",
                entry.id,
                entry.aggregate_type,
                entry.aggregate_id,
            )
            return False

        try:
            async with self.session_factory() as session:
                await outbox.mark_published(session, entry.id)
                await session.commit()
        except Exception:
            # 送信済みなので次の周期で再送される (at-least-once)
            logger.exception("Failed to mark outbox event %s as published", entry.id)
            return False

        logger.info(
            "Published event %s to %s: %s/%s",
            entry.event_type,
            message.destination,
            entry.aggregate_type,
            entry.aggregate_id,
        )
        return True

    async def cleanup_old_events(self, retention_days: int) -> int:
        async with self.session_factory() as session:
            deleted = await outbox.cleanup_old_events(session, retention_days)
            await session.commit()
        logger.info("Cleaned up %d old outbox events", deleted)
        return deleted

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで一定間隔で publish_events を繰り返す。"""
        logger.info("Outbox relay started (interval %.1fs)", self.interval)
        while not shutdown_event.is_set():
            try:
                await self.publish_events()
            except Exception:
                logger.exception("Outbox relay iteration failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox relay stopped")
