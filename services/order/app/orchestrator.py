"""
Saga Orchestrator — 注文・支払い Saga

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが Saga の状態機械を進め、
  注文の更新と次に送るメッセージ (Outbox) を 1 トランザクションで書き込む。
  支払い失敗時は補償トランザクション（注文キャンセル）を実行する。

  フロー:
  ┌─────────────────────────────────────────────────────────────┐
  │  1. 注文作成後: 支払い要求コマンドを Outbox に追加           │
  │     STARTED → PAYMENT_REQUESTED                            │
  │  2. PaymentSucceeded 受信                                   │
  │     → 注文確定 + OrderConfirmed + NotificationRequested     │
  │     PAYMENT_REQUESTED → PAYMENT_SUCCEEDED → COMPLETED      │
  │  3. PaymentFailed 受信 (補償)                               │
  │     → 注文キャンセル + OrderCancelled                       │
  │     PAYMENT_REQUESTED → PAYMENT_FAILED → COMPENSATING      │
  │                       → COMPENSATED                        │
  └─────────────────────────────────────────────────────────────┘

  遷移の途中で例外が起きたら、Saga と注文を FAILED にする。
  この FAILED への書き込み自体は例外を外に出さない（ログのみ）。

  同じイベントの再配信:
  - Saga が終端状態なら IGNORED として何もしない
  - 同時に 2 つ処理された場合は状態の compare-and-set で後の方が負け、
    再読み込みすると終端状態なので IGNORED になる
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import order_store, outbox, saga_store
from .aggregate import OrderStatus
from .context import RequestContext
from .errors import ConcurrencyConflict, InvalidTransition
from .events import (
    NotificationRequested,
    OrderCancelled,
    OrderConfirmed,
    PaymentFailed,
    PaymentRequested,
    PaymentSucceeded,
)
from .saga import Saga, SagaState

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Order"

Step = Callable[[AsyncSession, Saga], Awaitable[None]]


class TransitionOutcome(str, Enum):
    APPLIED = "APPLIED"
    IGNORED = "IGNORED"
    FAILED = "FAILED"


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(self, session_factory: sessionmaker, conflict_retries: int = 3):
        self.session_factory = session_factory
        self.conflict_retries = max(1, conflict_retries)

    # ── Step 1: 支払い要求 ───────────────────────────

    async def start_payment_request(
        self,
        saga_id: str,
        order_id: str,
        user_id: str,
        amount: Decimal,
        ctx: RequestContext,
    ) -> TransitionOutcome:
        """
        支払い要求コマンドを発行する。

        Saga は STARTED であること。Saga が無ければ SagaNotFound。
        """
        ctx = ctx.with_saga(saga_id)
        logger.info(
            "Starting payment request for saga: %s, order: %s", saga_id, order_id, extra=ctx.log_extra()
        )

        async def step(session: AsyncSession, saga: Saga) -> None:
            await saga_store.transition_saga(session, saga, SagaState.PAYMENT_REQUESTED)

            order = await order_store.require_order(session, saga.order_id)
            order.mark_payment_requested()
            await order_store.update_order(session, order)

            await outbox.save_event(
                session,
                AGGREGATE_TYPE,
                saga.order_id,
                PaymentRequested.event_type,
                PaymentRequested(
                    order_id=saga.order_id,
                    user_id=user_id,
                    amount=amount,
                    correlation_id=ctx.correlation_id,
                    saga_id=saga_id,
                ),
            )

        return await self._run_transition(
            saga_id, order_id, SagaState.STARTED, step, ctx, "payment request"
        )

    # ── Step 2: 支払い成功 ───────────────────────────

    async def handle_payment_success(
        self, event: PaymentSucceeded, ctx: RequestContext
    ) -> TransitionOutcome:
        ctx = ctx.with_saga(event.saga_id)
        logger.info(
            "Handling payment success for saga: %s, order: %s",
            event.saga_id,
            event.order_id,
            extra=ctx.log_extra(),
        )

        async def step(session: AsyncSession, saga: Saga) -> None:
            saga = await saga_store.transition_saga(session, saga, SagaState.PAYMENT_SUCCEEDED)

            order = await order_store.require_order(session, saga.order_id)
            order.mark_confirmed(event.payment_id)
            await order_store.update_order(session, order)

            await saga_store.transition_saga(session, saga, SagaState.COMPLETED)

            await outbox.save_event(
                session,
                AGGREGATE_TYPE,
                saga.order_id,
                OrderConfirmed.event_type,
                OrderConfirmed(
                    order_id=saga.order_id,
                    user_id=event.user_id,
                    payment_id=event.payment_id,
                    correlation_id=ctx.correlation_id,
                    saga_id=saga.saga_id,
                ),
            )
            await outbox.save_event(
                session,
                AGGREGATE_TYPE,
                saga.order_id,
                NotificationRequested.event_type,
                NotificationRequested(
                    order_id=saga.order_id,
                    user_id=event.user_id,
                    notification_type="ORDER_CONFIRMED",
                    message=f"Your order {saga.order_id} has been confirmed.",
                    correlation_id=ctx.correlation_id,
                    saga_id=saga.saga_id,
                ),
            )

        return await self._run_transition(
            event.saga_id, event.order_id, SagaState.PAYMENT_REQUESTED, step, ctx, "payment success"
        )

    # ── Step 3: 支払い失敗 (補償) ────────────────────

    async def handle_payment_failure(
        self, event: PaymentFailed, ctx: RequestContext
    ) -> TransitionOutcome:
        ctx = ctx.with_saga(event.saga_id)
        logger.info(
            "Handling payment failure for saga: %s, order: %s",
            event.saga_id,
            event.order_id,
            extra=ctx.log_extra(),
        )

        async def step(session: AsyncSession, saga: Saga) -> None:
            saga = await saga_store.transition_saga(session, saga, SagaState.PAYMENT_FAILED)
            saga = await saga_store.transition_saga(session, saga, SagaState.COMPENSATING)
            await self._compensate_order(session, saga, event.user_id, event.reason, ctx)
            await saga_store.transition_saga(session, saga, SagaState.COMPENSATED)

        return await self._run_transition(
            event.saga_id, event.order_id, SagaState.PAYMENT_REQUESTED, step, ctx, "payment failure"
        )

    async def _compensate_order(
        self,
        session: AsyncSession,
        saga: Saga,
        user_id: str,
        reason: str,
        ctx: RequestContext,
    ) -> None:
        """補償トランザクション: 注文をキャンセルし OrderCancelled を Outbox に追加する。"""
        logger.info("Compensating order: %s due to: %s", saga.order_id, reason, extra=ctx.log_extra())

        order = await order_store.require_order(session, saga.order_id)
        order.mark_cancelled()
        await order_store.update_order(session, order)

        await outbox.save_event(
            session,
            AGGREGATE_TYPE,
            saga.order_id,
            OrderCancelled.event_type,
            OrderCancelled(
                order_id=saga.order_id,
                user_id=user_id,
                reason=reason,
                correlation_id=ctx.correlation_id,
                saga_id=saga.saga_id,
            ),
        )

    # ── 共通: 遷移の実行と FAILED へのフォールバック ──

    async def _run_transition(
        self,
        saga_id: str,
        order_id: str,
        expected: SagaState,
        step: Step,
        ctx: RequestContext,
        description: str,
    ) -> TransitionOutcome:
        reason = f"Error processing {description}"
        for attempt in range(1, self.conflict_retries + 1):
            async with self.session_factory() as session:
                # SagaNotFound / InvalidTransition は何も書かずに呼び出し元へ
                saga = await saga_store.require_saga(session, saga_id)
                if saga.order_id != order_id:
                    raise InvalidTransition(
                        f"Saga {saga_id} belongs to order {saga.order_id}, not {order_id}"
                    )
                if saga.state is not expected:
                    if saga.state.is_terminal or expected is SagaState.STARTED:
                        logger.warning(
                            "Ignoring %s for saga %s in state %s",
                            description,
                            saga_id,
                            saga.state.value,
                            extra=ctx.log_extra(),
                        )
                        return TransitionOutcome.IGNORED
                    raise InvalidTransition(
                        f"Saga {saga_id} is in state {saga.state.value}, expected {expected.value}"
                    )

                try:
                    await step(session, saga)
                    await session.commit()
                    logger.info(
                        "Applied %s for saga %s (order %s)",
                        description,
                        saga_id,
                        order_id,
                        extra=ctx.log_extra(),
                    )
                    return TransitionOutcome.APPLIED
                except ConcurrencyConflict as exc:
                    await session.rollback()
                    logger.warning(
                        "Concurrent update during %s for saga %s (attempt %d/%d): %s",
                        description,
                        saga_id,
                        attempt,
                        self.conflict_retries,
                        exc,
                        extra=ctx.log_extra(),
                    )
                    reason = f"Gave up {description} after {attempt} concurrent update conflicts"
                except Exception:
                    await session.rollback()
                    logger.exception(
                        "Error handling %s for order: %s", description, order_id, extra=ctx.log_extra()
                    )
                    reason = f"Error processing {description}"
                    break

        await self._fail_saga(saga_id, order_id, reason, ctx)
        return TransitionOutcome.FAILED

    async def _fail_saga(
        self, saga_id: str, order_id: str, reason: str, ctx: RequestContext
    ) -> None:
        """Saga と注文を FAILED にする。ここで起きた例外は外に出さない。"""
        logger.error("Saga failed for order: %s, reason: %s", order_id, reason, extra=ctx.log_extra())
        try:
            async with self.session_factory() as session:
                saga = await saga_store.get_saga(session, saga_id)
                if saga is None or saga.state.is_terminal:
                    logger.warning(
                        "Saga %s not moved to FAILED (state: %s)",
                        saga_id,
                        saga.state.value if saga else "missing",
                        extra=ctx.log_extra(),
                    )
                    return
                await saga_store.transition_saga(session, saga, SagaState.FAILED)

                order = await order_store.get_order(session, saga.order_id)
                if order is not None and order.can_transition_to(OrderStatus.FAILED):
                    order.mark_failed()
                    await order_store.update_order(session, order)

                await session.commit()
        except Exception:
            logger.exception("Could not mark saga %s as FAILED", saga_id, extra=ctx.log_extra())

    # ── 滞留 Saga の検出 ────────────────────────────

    async def recover_stuck_sagas(self, threshold: timedelta = timedelta(minutes=30)) -> list[Saga]:
        """
        非終端状態のまま threshold 以上更新されていない Saga を検出する。

        検出のみで自動的な補償はしない。運用者が対応する。
        """
        cutoff = datetime.now(timezone.utc) - threshold
        async with self.session_factory() as session:
            stuck = await saga_store.find_stuck_sagas(session, cutoff)

        logger.info("Found %d stuck sagas to recover", len(stuck))
        for saga in stuck:
            logger.warning(
                "Stuck saga detected: %s in state: %s (order %s, last updated %s)",
                saga.saga_id,
                saga.state.value,
                saga.order_id,
                saga.last_updated.isoformat(),
                extra={"saga_id": saga.saga_id},
            )
        return stuck
