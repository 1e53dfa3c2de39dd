"""
Order Service — Transactional Outbox

Outbox パターンの中核。
送信したいメッセージを「ドメインの変更と同じトランザクション」で
outbox_events に書き込む。実際の送信は OutboxRelay が後から行う。

    ┌─────────── 1 トランザクション ───────────┐
    │  orders / order_saga の更新              │
    │  outbox_events への INSERT (published=0) │
    └──────────────────────────────────────────┘
                      │  (非同期)
                      ▼
               OutboxRelay ──▶ Message Channel

これでストアとメッセージングの二重書き込み問題を
分散トランザクションなしで解決する。
"""

import json
import logging
from collections.abc import Collection
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel
from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import as_utc, outbox_events

logger = logging.getLogger(__name__)


class OutboxEntry(BaseModel):
    id: int
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: str
    published: bool
    created_at: datetime
    published_at: datetime | None = None


def serialize_payload(payload: BaseModel | dict | str) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, BaseModel):
        return payload.model_dump_json(by_alias=True)
    return json.dumps(payload, default=str)


async def save_event(
    session: AsyncSession,
    aggregate_type: str,
    aggregate_id: str,
    event_type: str,
    payload: BaseModel | dict | str,
) -> int:
    """
    Outbox にメッセージを追加する。

    呼び出し側のトランザクションに参加するだけで commit はしない。
    ドメインの変更と一緒に commit されるか、一緒にロールバックされる。
    """
    result = await session.execute(
        insert(outbox_events)
        .values(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=serialize_payload(payload),
            published=False,
            created_at=datetime.now(timezone.utc),
        )
        .returning(outbox_events.c.id)
    )
    entry_id = result.scalar_one()
    logger.debug(
        "Saved outbox event %s #%s for %s/%s", event_type, entry_id, aggregate_type, aggregate_id
    )
    return entry_id


async def fetch_unpublished(
    session: AsyncSession,
    limit: int | None = None,
    exclude_aggregates: Collection[str] = (),
) -> list[OutboxEntry]:
    """
    未送信のメッセージを古い順に返す（同じ集約内の因果順を保つ）。

    exclude_aggregates に含まれる集約のメッセージは返さない。
    """
    stmt = (
        select(outbox_events)
        .where(outbox_events.c.published.is_(False))
        .order_by(outbox_events.c.created_at, outbox_events.c.id)
    )
    if exclude_aggregates:
        stmt = stmt.where(outbox_events.c.aggregate_id.not_in(list(exclude_aggregates)))
    if limit:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return [_to_entry(row) for row in result.fetchall()]


async def mark_published(session: AsyncSession, entry_id: int) -> None:
    await session.execute(
        update(outbox_events)
        .where(outbox_events.c.id == entry_id)
        .values(published=True, published_at=datetime.now(timezone.utc))
    )


async def cleanup_old_events(session: AsyncSession, retention_days: int) -> int:
    """送信済みで保持期間を過ぎたメッセージを削除する。"""
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    result = await session.execute(
        delete(outbox_events)
        .where(outbox_events.c.published.is_(True))
        .where(outbox_events.c.created_at < cutoff)
    )
    return result.rowcount


async def load_events_for_aggregate(session: AsyncSession, aggregate_id: str) -> list[OutboxEntry]:
    """指定集約の Outbox 履歴を作成順に返す（調査用）。"""
    result = await session.execute(
        select(outbox_events)
        .where(outbox_events.c.aggregate_id == aggregate_id)
        .order_by(outbox_events.c.created_at, outbox_events.c.id)
    )
    return [_to_entry(row) for row in result.fetchall()]


def _to_entry(row) -> OutboxEntry:
    return OutboxEntry(
        id=row.id,
        aggregate_type=row.aggregate_type,
        aggregate_id=row.aggregate_id,
        event_type=row.event_type,
        payload=row.payload,
        published=bool(row.published),
        created_at=as_utc(row.created_at),
        published_at=as_utc(row.published_at),
    )
