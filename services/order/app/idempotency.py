"""
Order Service — 冪等性ガード

クライアントが Idempotency-Key ヘッダを付けて送ったリクエストについて、
最初に返したレスポンスを保存し、同じキーの再送にはそれをそのまま返す。

- キー無し        → ガードを使わない
- 有効期限内の記録 → 保存済みレスポンスを返す（新しい注文 ID は作らない）
- 期限切れの記録   → 無いものとして扱う

同じキーのリクエストが同時に 2 つ来た場合、後から INSERT した方は
ON CONFLICT DO NOTHING で何も書かずに終わる。エラーにはせず、
その呼び出し元には自分で計算したレスポンスを返す。
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import DateTime, bindparam, delete, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import idempotency_keys

logger = logging.getLogger(__name__)

_INSERT_IF_ABSENT = text("""
    INSERT INTO idempotency_keys
        (idempotency_key, response_payload, created_at, expires_at)
    VALUES
        (:key, :payload, :created_at, :expires_at)
    ON CONFLICT (idempotency_key) DO NOTHING
""").bindparams(
    bindparam("created_at", type_=DateTime(timezone=True)),
    bindparam("expires_at", type_=DateTime(timezone=True)),
)


class IdempotencyGuard:
    def __init__(self, ttl: timedelta = timedelta(hours=24)):
        self.ttl = ttl

    async def check_and_replay(self, session: AsyncSession, key: str | None) -> str | None:
        """有効な記録があれば保存済みのレスポンス (JSON 文字列) を返す。"""
        if not key:
            return None
        result = await session.execute(
            select(idempotency_keys.c.response_payload)
            .where(idempotency_keys.c.idempotency_key == key)
            .where(idempotency_keys.c.expires_at > datetime.now(timezone.utc))
        )
        payload = result.scalar_one_or_none()
        if payload is not None:
            logger.info("Duplicate request detected with idempotency key: %s", key)
        return payload

    async def store(self, session: AsyncSession, key: str, payload: str) -> bool:
        """
        レスポンスを保存する。呼び出し側のトランザクションに参加する。

        同じキーが既にあれば何もしないで False を返す。
        """
        now = datetime.now(timezone.utc)
        # 期限切れの記録は無いものとして扱うので、先に消しておく
        await session.execute(
            delete(idempotency_keys)
            .where(idempotency_keys.c.idempotency_key == key)
            .where(idempotency_keys.c.expires_at <= now)
        )
        result = await session.execute(
            _INSERT_IF_ABSENT,
            {"key": key, "payload": payload, "created_at": now, "expires_at": now + self.ttl},
        )
        if result.rowcount == 0:
            logger.warning(
                "Idempotency key %s already exists (concurrent insert); keeping the stored response",
                key,
            )
            return False
        return True

    async def purge_expired(self, session: AsyncSession) -> int:
        result = await session.execute(
            delete(idempotency_keys).where(idempotency_keys.c.expires_at <= datetime.now(timezone.utc))
        )
        return result.rowcount
