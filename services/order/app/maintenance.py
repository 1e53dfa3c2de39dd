"""
Order Service — 定期メンテナンス

一定間隔で以下を実行する:
  1. 送信済みで保持期間を過ぎた Outbox メッセージの削除
  2. 期限切れの冪等キーの削除
  3. 滞留 Saga の検出（ログのみ。自動補償はしない）
"""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.orm import sessionmaker

from .config import Settings
from .idempotency import IdempotencyGuard
from .orchestrator import OrderSagaOrchestrator
from .relay import OutboxRelay

logger = logging.getLogger(__name__)


async def run_housekeeping_once(
    session_factory: sessionmaker,
    relay: OutboxRelay,
    guard: IdempotencyGuard,
    orchestrator: OrderSagaOrchestrator,
    settings: Settings,
) -> None:
    await relay.cleanup_old_events(settings.outbox_retention_days)

    async with session_factory() as session:
        purged = await guard.purge_expired(session)
        await session.commit()
    logger.info("Purged %d expired idempotency keys", purged)

    await orchestrator.recover_stuck_sagas(
        timedelta(minutes=settings.saga_stuck_threshold_minutes)
    )


async def run_housekeeping(
    session_factory: sessionmaker,
    relay: OutboxRelay,
    guard: IdempotencyGuard,
    orchestrator: OrderSagaOrchestrator,
    settings: Settings,
    shutdown_event: asyncio.Event,
) -> None:
    while not shutdown_event.is_set():
        try:
            await run_housekeeping_once(session_factory, relay, guard, orchestrator, settings)
        except Exception:
            logger.exception("Housekeeping run failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=settings.housekeeping_interval)
        except asyncio.TimeoutError:
            pass
