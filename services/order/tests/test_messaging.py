"""
メッセージ境界のテスト

イベントのデコード、EventIngress の振り分け、
支払いイベントのサブスクライバー (ACK / デッドレター / 保留) を確認する。
"""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError
from redis.exceptions import ResponseError

from services.order.app.channel import InboundMessage, OutboundMessage, RedisStreamChannel
from services.order.app.errors import InvalidTransition, SagaNotFound
from services.order.app.events import (
    PaymentFailed,
    PaymentRequested,
    PaymentSucceeded,
    UnknownPaymentEvent,
    decode_payment_event,
)
from services.order.app.ingress import EventIngress
from services.order.app.orchestrator import TransitionOutcome
from services.order.app.subscriber import ensure_consumer_group, handle_entry, run_payment_consumer

SUCCEEDED_BODY = json.dumps(
    {
        "paymentId": "pay-1",
        "orderId": "ORD-1234567890",
        "userId": "user-1",
        "correlationId": "corr-pay",
        "sagaId": "saga-1",
        "timestamp": "2024-01-01T00:00:00Z",
    }
)

FAILED_BODY = json.dumps(
    {
        "orderId": "ORD-1234567890",
        "userId": "user-1",
        "reason": "Insufficient Funds",
        "correlationId": "corr-pay",
        "sagaId": "saga-1",
    }
)


def inbound(event_type="PaymentSucceeded", body=SUCCEEDED_BODY, message_id="1-0") -> InboundMessage:
    return InboundMessage(
        source="payments.events",
        message_id=message_id,
        key="ORD-1234567890",
        headers={"eventType": event_type},
        body=body,
    )


# ── デコード ─────────────────────────────────────


def test_decode_payment_succeeded():
    event = decode_payment_event("PaymentSucceeded", SUCCEEDED_BODY)

    assert isinstance(event, PaymentSucceeded)
    assert event.payment_id == "pay-1"
    assert event.saga_id == "saga-1"
    assert event.correlation_id == "corr-pay"


def test_decode_payment_failed_without_timestamp():
    event = decode_payment_event("PaymentFailed", FAILED_BODY)

    assert isinstance(event, PaymentFailed)
    assert event.reason == "Insufficient Funds"
    assert event.timestamp is not None


def test_decode_unknown_type():
    event = decode_payment_event("PaymentRefunded", "{}")

    assert event == UnknownPaymentEvent(event_type="PaymentRefunded", body="{}")
    assert isinstance(decode_payment_event(None, "{}"), UnknownPaymentEvent)


@pytest.mark.parametrize("body", ["not json", json.dumps({"orderId": "ORD-1"})])
def test_decode_malformed_body(body):
    with pytest.raises(ValidationError):
        decode_payment_event("PaymentSucceeded", body)


def test_outbound_messages_are_camel_case():
    body = json.loads(
        PaymentRequested(
            order_id="ORD-1", user_id="u", amount=Decimal("100.00"), correlation_id="c", saga_id="s"
        ).to_json()
    )

    assert set(body) == {"orderId", "userId", "amount", "correlationId", "sagaId", "timestamp"}


# ── Channel ─────────────────────────────────────


def test_inbound_message_from_stream_fields():
    message = InboundMessage.from_fields(
        "payments.events",
        "5-0",
        {"key": "ORD-1", "eventType": "PaymentFailed", "aggregateId": "ORD-1", "body": "{}"},
    )

    assert message.key == "ORD-1"
    assert message.event_type == "PaymentFailed"
    assert message.headers == {"eventType": "PaymentFailed", "aggregateId": "ORD-1"}
    assert message.body == "{}"


@pytest.mark.asyncio
async def test_redis_channel_appends_to_destination_stream():
    redis = AsyncMock()
    message = OutboundMessage(
        destination="orders.events",
        partition_key="ORD-1",
        event_type="OrderCreated",
        aggregate_type="Order",
        aggregate_id="ORD-1",
        body="{}",
    )

    await RedisStreamChannel(redis, max_len=1000).publish(message)

    redis.xadd.assert_awaited_once_with(
        "orders.events",
        {
            "key": "ORD-1",
            "eventType": "OrderCreated",
            "aggregateType": "Order",
            "aggregateId": "ORD-1",
            "body": "{}",
        },
        maxlen=1000,
        approximate=True,
    )


# ── EventIngress ────────────────────────────────


@pytest.fixture
def mock_orchestrator():
    orchestrator = AsyncMock()
    orchestrator.handle_payment_success.return_value = TransitionOutcome.APPLIED
    orchestrator.handle_payment_failure.return_value = TransitionOutcome.APPLIED
    return orchestrator


@pytest.mark.asyncio
async def test_ingress_routes_success_with_event_correlation_id(mock_orchestrator):
    outcome = await EventIngress(mock_orchestrator).dispatch(inbound())

    assert outcome is TransitionOutcome.APPLIED
    event, ctx = mock_orchestrator.handle_payment_success.await_args.args
    assert event.payment_id == "pay-1"
    assert ctx.correlation_id == "corr-pay"
    assert ctx.saga_id == "saga-1"
    mock_orchestrator.handle_payment_failure.assert_not_awaited()


@pytest.mark.asyncio
async def test_ingress_routes_failure(mock_orchestrator):
    await EventIngress(mock_orchestrator).dispatch(inbound("PaymentFailed", FAILED_BODY))

    event, _ = mock_orchestrator.handle_payment_failure.await_args.args
    assert event.reason == "Insufficient Funds"


@pytest.mark.asyncio
async def test_ingress_drops_unknown_type(mock_orchestrator):
    assert await EventIngress(mock_orchestrator).dispatch(inbound("PaymentRefunded", "{}")) is None

    mock_orchestrator.handle_payment_success.assert_not_awaited()
    mock_orchestrator.handle_payment_failure.assert_not_awaited()


# ── Subscriber ──────────────────────────────────


@pytest.fixture
def redis():
    return AsyncMock()


@pytest.mark.asyncio
async def test_processed_entry_is_acked(redis, settings):
    ingress = AsyncMock()

    assert await handle_entry(redis, ingress, settings, inbound()) is True

    redis.xack.assert_awaited_once_with("payments.events", "order-service", "1-0")
    redis.xadd.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [SagaNotFound("saga-1"), InvalidTransition("wrong state")],
)
async def test_unprocessable_entry_is_dead_lettered(redis, settings, error):
    ingress = AsyncMock()
    ingress.dispatch.side_effect = error

    assert await handle_entry(redis, ingress, settings, inbound()) is True

    stream, fields = redis.xadd.await_args.args
    assert stream == "payments.events.dlq"
    assert fields["sourceId"] == "1-0"
    assert fields["eventType"] == "PaymentSucceeded"
    assert fields["body"] == SUCCEEDED_BODY
    assert fields["error"] == str(error)
    redis.xack.assert_awaited_once()


@pytest.mark.asyncio
async def test_malformed_entry_is_dead_lettered(redis, settings, mock_orchestrator):
    ingress = EventIngress(mock_orchestrator)

    assert await handle_entry(redis, ingress, settings, inbound(body="not json")) is True

    assert redis.xadd.await_args.args[0] == "payments.events.dlq"
    redis.xack.assert_awaited_once()


@pytest.mark.asyncio
async def test_transient_failure_leaves_entry_pending(redis, settings):
    ingress = AsyncMock()
    ingress.dispatch.side_effect = ConnectionError("database unavailable")

    assert await handle_entry(redis, ingress, settings, inbound()) is False

    redis.xack.assert_not_awaited()
    redis.xadd.assert_not_awaited()


@pytest.mark.asyncio
async def test_existing_consumer_group_is_reused(redis):
    redis.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")

    await ensure_consumer_group(redis, "payments.events", "order-service")


@pytest.mark.asyncio
async def test_other_group_errors_propagate(redis):
    redis.xgroup_create.side_effect = ResponseError("WRONGTYPE")

    with pytest.raises(ResponseError):
        await ensure_consumer_group(redis, "payments.events", "order-service")


@pytest.mark.asyncio
async def test_consumer_reads_pending_then_new_entries(redis, settings):
    shutdown_event = asyncio.Event()
    ingress = AsyncMock()
    reads = []

    async def xreadgroup(group, consumer, streams, count, block):
        reads.append(streams["payments.events"])
        if len(reads) == 1:
            return [["payments.events", [("1-0", {"eventType": "PaymentSucceeded", "body": "{}"})]]]
        if len(reads) == 3:
            shutdown_event.set()
        return [["payments.events", []]]

    redis.xreadgroup.side_effect = xreadgroup

    await asyncio.wait_for(run_payment_consumer(redis, ingress, settings, shutdown_event), timeout=1.0)

    # 保留分を最後まで読み進めてから新着へ
    assert reads == ["0", "1-0", ">"]
    message = ingress.dispatch.await_args.args[0]
    assert message.message_id == "1-0"
    assert message.event_type == "PaymentSucceeded"
    redis.xack.assert_awaited_once_with("payments.events", "order-service", "1-0")


@pytest.mark.asyncio
async def test_consumer_survives_ack_failure(redis, settings):
    shutdown_event = asyncio.Event()
    ingress = AsyncMock()
    redis.xack.side_effect = [ConnectionError("redis unavailable"), 1]
    entries = [
        ("1-0", {"eventType": "PaymentSucceeded", "body": "{}"}),
        ("2-0", {"eventType": "PaymentFailed", "body": "{}"}),
    ]

    async def xreadgroup(group, consumer, streams, count, block):
        if streams["payments.events"] == "0":
            return [["payments.events", entries]]
        shutdown_event.set()
        return []

    redis.xreadgroup.side_effect = xreadgroup

    await asyncio.wait_for(run_payment_consumer(redis, ingress, settings, shutdown_event), timeout=1.0)

    assert [call.args[0].message_id for call in ingress.dispatch.await_args_list] == ["1-0", "2-0"]
    assert redis.xack.await_count == 2


@pytest.mark.asyncio
async def test_consumer_redelivers_pending_entry_without_restart(redis, settings):
    settings = settings.model_copy(update={"consumer_pending_retry_interval": 0})
    shutdown_event = asyncio.Event()
    ingress = AsyncMock()
    ingress.dispatch.side_effect = [ConnectionError("database unavailable"), None]
    entry = ("1-0", {"eventType": "PaymentSucceeded", "body": SUCCEEDED_BODY})
    delivered = []
    acked = []
    reads = []

    async def xreadgroup(group, consumer, streams, count, block):
        last_id = streams["payments.events"]
        reads.append(last_id)
        if last_id == ">":
            if not delivered:
                delivered.append(entry[0])
                return [["payments.events", [entry]]]
            shutdown_event.set()
            return []
        if last_id == "0" and delivered and not acked:
            return [["payments.events", [entry]]]
        return [["payments.events", []]]

    async def xack(stream, group, message_id):
        acked.append(message_id)
        return 1

    redis.xreadgroup.side_effect = xreadgroup
    redis.xack.side_effect = xack

    await asyncio.wait_for(run_payment_consumer(redis, ingress, settings, shutdown_event), timeout=1.0)

    assert ingress.dispatch.await_count == 2
    assert acked == ["1-0"]
    assert reads == ["0", ">", "0", "1-0", ">"]
