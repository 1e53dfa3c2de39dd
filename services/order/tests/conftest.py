"""
テスト共通のフィクスチャ

テストごとに SQLite (aiosqlite) のファイル DB を作り、
本番と同じテーブル定義・同じストア関数を通して検証する。
Message Channel は送信内容を記録するだけのダブルに差し替える。
"""

from datetime import timedelta

import pytest

from services.order.app import commands, db
from services.order.app.config import Settings
from services.order.app.context import RequestContext
from services.order.app.idempotency import IdempotencyGuard
from services.order.app.orchestrator import OrderSagaOrchestrator
from services.order.app.relay import OutboxRelay
from services.order.app.schemas import CreateOrderRequest
from services.order.tests.factories import RecordingChannel, make_request


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"


@pytest.fixture
def settings(database_url) -> Settings:
    return Settings(
        database_url=database_url,
        create_schema=True,
        outbox_relay_enabled=False,
        housekeeping_enabled=False,
        payment_consumer_enabled=False,
        outbox_poll_interval=0.01,
    )


@pytest.fixture
async def engine(database_url):
    engine = db.create_engine(database_url)
    await db.create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return db.create_session_factory(engine)


@pytest.fixture
def guard() -> IdempotencyGuard:
    return IdempotencyGuard(timedelta(hours=24))


@pytest.fixture
def orchestrator(session_factory) -> OrderSagaOrchestrator:
    return OrderSagaOrchestrator(session_factory, conflict_retries=3)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def relay(session_factory, channel, settings) -> OutboxRelay:
    return OutboxRelay(session_factory, channel, settings)


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(correlation_id="corr-123")


@pytest.fixture
def place(session_factory, guard, ctx):
    """注文を作成して PlacementResult を返すヘルパ"""

    async def _place(request: CreateOrderRequest | None = None, idempotency_key: str | None = None):
        async with session_factory() as session:
            return await commands.place_order(
                session, guard, request or make_request(), idempotency_key, ctx
            )

    return _place


@pytest.fixture
def placed_and_requested(place, orchestrator, ctx):
    """注文を作成し、支払い要求まで進めた状態の OrderResponse を返す"""

    async def _run():
        result = await place()
        order = result.response
        await orchestrator.start_payment_request(
            order.saga_id, order.order_id, order.user_id, order.total_amount, ctx
        )
        return order

    return _run
