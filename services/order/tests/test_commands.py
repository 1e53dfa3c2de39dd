"""注文作成コマンドのテスト"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from services.order.app import order_store, outbox, saga_store
from services.order.app.aggregate import OrderStatus
from services.order.app.db import idempotency_keys, order_saga, orders, outbox_events
from services.order.app.saga import SagaState
from services.order.tests.factories import count_rows, make_request


@pytest.mark.asyncio
async def test_place_order_writes_order_saga_and_outbox(place, session_factory):
    result = await place()
    response = result.response

    assert result.replayed is False
    assert response.total_amount == Decimal("100.00")
    assert response.status is OrderStatus.PENDING
    assert response.order_id.startswith("ORD-")

    async with session_factory() as session:
        order = await order_store.require_order(session, response.order_id)
        saga = await saga_store.require_saga(session, response.saga_id)
        entries = await outbox.load_events_for_aggregate(session, response.order_id)

    assert order.total_amount == Decimal("100.00")
    assert order.lines[0].quantity == 2
    assert saga.state is SagaState.STARTED
    assert saga.order_id == response.order_id
    assert json.loads(saga.payload)["order_id"] == response.order_id

    assert [e.event_type for e in entries] == ["OrderCreated"]
    body = json.loads(entries[0].payload)
    assert body["orderId"] == response.order_id
    assert body["sagaId"] == response.saga_id
    assert body["correlationId"] == "corr-123"
    assert Decimal(str(body["totalAmount"])) == Decimal("100.00")
    assert entries[0].published is False


@pytest.mark.asyncio
async def test_same_idempotency_key_replays_first_response(place, session_factory):
    first = await place(idempotency_key="abc")
    second = await place(idempotency_key="abc")

    assert second.replayed is True
    assert second.response.model_dump_json() == first.response.model_dump_json()
    assert await count_rows(session_factory, orders) == 1
    assert await count_rows(session_factory, order_saga) == 1
    assert await count_rows(session_factory, outbox_events) == 1


@pytest.mark.asyncio
async def test_without_key_every_request_creates_an_order(place, session_factory):
    first = await place()
    second = await place()

    assert first.response.order_id != second.response.order_id
    assert await count_rows(session_factory, orders) == 2


@pytest.mark.asyncio
async def test_different_keys_create_different_orders(place, session_factory):
    first = await place(make_request(user_id="user-2"), idempotency_key="k1")
    second = await place(make_request(user_id="user-2"), idempotency_key="k2")

    assert first.response.order_id != second.response.order_id
    assert await count_rows(session_factory, orders) == 2


@pytest.mark.asyncio
async def test_losing_idempotency_race_keeps_first_stored_response(
    place, guard, session_factory, monkeypatch
):
    first = await place(idempotency_key="race")

    # 先行リクエストのコミット前に重複チェックを通過した状況
    monkeypatch.setattr(guard, "check_and_replay", AsyncMock(return_value=None))
    loser = await place(idempotency_key="race")
    monkeypatch.undo()

    assert loser.replayed is False
    assert loser.response.order_id != first.response.order_id
    assert loser.response.status is OrderStatus.PENDING

    async with session_factory() as session:
        stored = await guard.check_and_replay(session, "race")
    assert stored == first.response.model_dump_json()

    later = await place(idempotency_key="race")
    assert later.replayed is True
    assert later.response.model_dump_json() == first.response.model_dump_json()
    assert await count_rows(session_factory, idempotency_keys) == 1
