"""
Order Service — 支払いイベントのサブスクライバー

payments.events ストリームをコンシューマグループで購読し、
受信したイベントを EventIngress に渡す。

Redis Pub/Sub と違い、Streams のコンシューマグループは
ACK されるまでエントリを保留 (pending) として覚えている。
起動時はまず自分の保留分を読み直し、その後に新着を読む。

    処理成功                       → ACK
    本文が壊れている / Saga が無い   → デッドレターストリームへ複製して ACK
    その他の例外                   → ACK しない（保留分の読み直しで再処理）
"""

import asyncio
import logging

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import ResponseError

from .channel import InboundMessage
from .config import Settings
from .errors import InvalidTransition, NotFoundError
from .ingress import EventIngress

logger = logging.getLogger(__name__)


async def ensure_consumer_group(redis: aioredis.Redis, stream: str, group: str) -> None:
    try:
        await redis.xgroup_create(stream, group, id="0", mkstream=True)
        logger.info("Created consumer group %s on %s", group, stream)
    except ResponseError as exc:
        if "BUSYGROUP" not in str(exc):
            raise


async def handle_entry(
    redis: aioredis.Redis,
    ingress: EventIngress,
    settings: Settings,
    message: InboundMessage,
) -> bool:
    """1 エントリを処理する。ACK したら True。"""
    stream = settings.payments_events_channel
    try:
        await ingress.dispatch(message)
    except (ValidationError, NotFoundError, InvalidTransition) as exc:
        logger.error(
            "Dead-lettering payment event %s (%s): %s", message.message_id, message.event_type, exc
        )
        await redis.xadd(
            settings.payments_dead_letter_channel,
            {
                "key": message.key or "",
                **message.headers,
                "body": message.body,
                "error": str(exc),
                "sourceId": message.message_id,
            },
        )
    except Exception:
        logger.exception("Failed to process payment event %s; leaving it pending", message.message_id)
        return False

    await redis.xack(stream, settings.consumer_group, message.message_id)
    return True


async def run_payment_consumer(
    redis: aioredis.Redis,
    ingress: EventIngress,
    settings: Settings,
    shutdown_event: asyncio.Event,
) -> None:
    """
    shutdown_event がセットされるまで payments.events を読み続ける。

    起動時と、その後 consumer_pending_retry_interval 秒ごとに自分の保留分を
    先頭から読み直す。一時的なエラーで ACK されなかったエントリは
    そこで再処理される。
    """
    stream = settings.payments_events_channel
    await ensure_consumer_group(redis, stream, settings.consumer_group)
    logger.info("Subscribed to %s as %s/%s", stream, settings.consumer_group, settings.consumer_name)

    loop = asyncio.get_running_loop()
    # "0" (以降は保留分の続きの ID) = 自分の保留分、">" = 新着
    last_id = "0"
    next_pending_scan = loop.time()
    while not shutdown_event.is_set():
        try:
            response = await redis.xreadgroup(
                settings.consumer_group,
                settings.consumer_name,
                {stream: last_id},
                count=50,
                block=1000,
            )
        except Exception:
            logger.exception("Failed to read from %s", stream)
            await asyncio.sleep(1.0)
            continue

        entries = response[0][1] if response else []
        for message_id, fields in entries:
            try:
                await handle_entry(
                    redis, ingress, settings, InboundMessage.from_fields(stream, message_id, fields or {})
                )
            except Exception:
                logger.exception("Failed to settle payment event %s; leaving it pending", message_id)

        if last_id != ">":
            if entries:
                last_id = entries[-1][0]
            else:
                last_id = ">"
                next_pending_scan = loop.time() + settings.consumer_pending_retry_interval
        elif loop.time() >= next_pending_scan:
            last_id = "0"
