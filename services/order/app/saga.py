"""
Order Service — 注文 Saga の状態

Saga は注文とは独立した行として保存され、監査のため削除しない。

    STARTED ─▶ PAYMENT_REQUESTED ─┬─▶ PAYMENT_SUCCEEDED ─▶ COMPLETED
                                  └─▶ PAYMENT_FAILED ─▶ COMPENSATING ─▶ COMPENSATED

    非終端状態からはどこからでも FAILED へ遷移できる。
    COMPLETED / COMPENSATED / FAILED は終端状態。
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class SagaState(str, Enum):
    STARTED = "STARTED"
    PAYMENT_REQUESTED = "PAYMENT_REQUESTED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    COMPLETED = "COMPLETED"
    COMPENSATING = "COMPENSATING"
    COMPENSATED = "COMPENSATED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SagaState.COMPLETED, SagaState.COMPENSATED, SagaState.FAILED})

_NEXT_STATES: dict[SagaState, set[SagaState]] = {
    SagaState.STARTED: {SagaState.PAYMENT_REQUESTED},
    SagaState.PAYMENT_REQUESTED: {SagaState.PAYMENT_SUCCEEDED, SagaState.PAYMENT_FAILED},
    SagaState.PAYMENT_SUCCEEDED: {SagaState.COMPLETED},
    SagaState.PAYMENT_FAILED: {SagaState.COMPENSATING},
    SagaState.COMPENSATING: {SagaState.COMPENSATED},
}


def can_transition(current: SagaState, target: SagaState) -> bool:
    if current.is_terminal:
        return False
    if target is SagaState.FAILED:
        return True
    return target in _NEXT_STATES.get(current, set())


class Saga(BaseModel):
    saga_id: str
    order_id: str
    state: SagaState
    payload: str
    last_updated: datetime
    created_at: datetime
