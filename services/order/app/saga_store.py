"""
Order Service — Saga の永続化

状態の更新は compare-and-set:
    UPDATE order_saga SET state = :new WHERE saga_id = :id AND state = :expected
同じ Saga に対する重複イベントが競合しても、後から来た方は
影響行数 0 で ConcurrencyConflict になり、上書きはしない。
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import as_utc, order_saga
from .errors import ConcurrencyConflict, InvalidTransition, SagaNotFound
from .saga import TERMINAL_STATES, Saga, SagaState, can_transition


async def insert_saga(
    session: AsyncSession,
    order_id: str,
    payload: str,
    saga_id: str | None = None,
) -> Saga:
    now = datetime.now(timezone.utc)
    saga = Saga(
        saga_id=saga_id or str(uuid4()),
        order_id=order_id,
        state=SagaState.STARTED,
        payload=payload,
        last_updated=now,
        created_at=now,
    )
    await session.execute(
        insert(order_saga).values(
            saga_id=saga.saga_id,
            order_id=saga.order_id,
            state=saga.state.value,
            payload=saga.payload,
            last_updated=saga.last_updated,
            created_at=saga.created_at,
        )
    )
    return saga


async def get_saga(session: AsyncSession, saga_id: str) -> Saga | None:
    result = await session.execute(select(order_saga).where(order_saga.c.saga_id == saga_id))
    row = result.fetchone()
    return _to_saga(row) if row else None


async def require_saga(session: AsyncSession, saga_id: str) -> Saga:
    saga = await get_saga(session, saga_id)
    if saga is None:
        raise SagaNotFound(saga_id)
    return saga


async def find_saga_by_order_id(session: AsyncSession, order_id: str) -> Saga | None:
    result = await session.execute(
        select(order_saga)
        .where(order_saga.c.order_id == order_id)
        .order_by(order_saga.c.created_at.desc())
        .limit(1)
    )
    row = result.fetchone()
    return _to_saga(row) if row else None


async def transition_saga(session: AsyncSession, saga: Saga, target: SagaState) -> Saga:
    """saga.state が DB 上でもまだ現在の状態である場合に限り target へ進める。"""
    if not can_transition(saga.state, target):
        raise InvalidTransition(
            f"Saga {saga.saga_id} cannot move from {saga.state.value} to {target.value}"
        )
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(order_saga)
        .where(order_saga.c.saga_id == saga.saga_id)
        .where(order_saga.c.state == saga.state.value)
        .values(state=target.value, last_updated=now)
    )
    if result.rowcount == 0:
        raise ConcurrencyConflict(
            f"Saga {saga.saga_id} is no longer in state {saga.state.value}"
        )
    return saga.model_copy(update={"state": target, "last_updated": now})


async def find_stuck_sagas(session: AsyncSession, updated_before: datetime) -> list[Saga]:
    """非終端状態のまま updated_before より前から更新されていない Saga"""
    result = await session.execute(
        select(order_saga)
        .where(order_saga.c.state.not_in([state.value for state in TERMINAL_STATES]))
        .where(order_saga.c.last_updated < updated_before)
        .order_by(order_saga.c.last_updated)
    )
    return [_to_saga(row) for row in result.fetchall()]


def _to_saga(row) -> Saga:
    return Saga(
        saga_id=row.saga_id,
        order_id=row.order_id,
        state=SagaState(row.state),
        payload=row.payload,
        last_updated=as_utc(row.last_updated),
        created_at=as_utc(row.created_at),
    )
