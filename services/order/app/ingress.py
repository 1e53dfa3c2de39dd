"""
Order Service — 支払いイベントの受け口 (Event Ingress)

受信メッセージを eventType ヘッダでデコードし、オーケストレーターに渡す。
相関 ID はイベント本文から取り出し、RequestContext として明示的に渡す。

    PaymentSucceeded    → handle_payment_success
    PaymentFailed       → handle_payment_failure
    UnknownPaymentEvent → ログに残して捨てる（再試行しない）
"""

import logging

from .channel import InboundMessage
from .context import RequestContext
from .events import PaymentFailed, PaymentSucceeded, UnknownPaymentEvent, decode_payment_event
from .orchestrator import OrderSagaOrchestrator, TransitionOutcome

logger = logging.getLogger(__name__)


class EventIngress:
    def __init__(self, orchestrator: OrderSagaOrchestrator):
        self.orchestrator = orchestrator

    async def dispatch(self, message: InboundMessage) -> TransitionOutcome | None:
        """
        1 件の受信メッセージを処理する。

        本文が壊れていれば pydantic.ValidationError、
        Saga が見つからなければ SagaNotFound を送出する。
        """
        logger.info(
            "Received payment event of type: %s with key: %s", message.event_type, message.key
        )
        event = decode_payment_event(message.event_type, message.body)

        if isinstance(event, UnknownPaymentEvent):
            logger.warning("Unknown payment event type: %s", event.event_type)
            return None

        ctx = RequestContext(correlation_id=event.correlation_id, saga_id=event.saga_id)
        if isinstance(event, PaymentSucceeded):
            return await self.orchestrator.handle_payment_success(event, ctx)
        if isinstance(event, PaymentFailed):
            return await self.orchestrator.handle_payment_failure(event, ctx)
        raise TypeError(f"unhandled payment event: {type(event).__name__}")
