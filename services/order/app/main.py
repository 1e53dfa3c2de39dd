"""
Order Service — FastAPI エントリーポイント

注文作成 (Command) と注文照会 (Query) のエンドポイントを提供する。
バックグラウンドでは以下のタスクが動く:

  - OutboxRelay        : outbox_events → Redis Streams
  - 支払いサブスクライバ : payments.events → Saga オーケストレーター
  - 定期メンテナンス     : Outbox 掃除 / 冪等キー掃除 / 滞留 Saga 検出

┌────────┐  POST /orders  ┌───────────────┐  XADD   ┌──────────────────┐
│ Client │ ─────────────▶ │ Order Service │ ──────▶ │ payments.commands │
└────────┘                │  (+ Outbox)   │ ◀────── │ payments.events   │
                          └───────────────┘ XREAD   └──────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import commands, db, outbox, queries
from .channel import RedisStreamChannel
from .config import Settings, get_settings
from .context import RequestContext
from .errors import ConflictError, InvalidTransition, NotFoundError, OrderServiceError
from .idempotency import IdempotencyGuard
from .ingress import EventIngress
from .logging_config import configure_logging
from .maintenance import run_housekeeping
from .orchestrator import OrderSagaOrchestrator
from .relay import OutboxRelay
from .schemas import ApiResponse, CreateOrderRequest
from .subscriber import run_payment_consumer

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    configure_logging(settings.log_level, settings.log_json)

    engine = db.create_engine(settings.database_url)
    if settings.create_schema:
        await db.create_schema(engine)
    session_factory = db.create_session_factory(engine)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)

    guard = IdempotencyGuard(timedelta(hours=settings.idempotency_ttl_hours))
    orchestrator = OrderSagaOrchestrator(session_factory, settings.saga_conflict_retries)
    relay = OutboxRelay(session_factory, RedisStreamChannel(redis_pool), settings)
    ingress = EventIngress(orchestrator)

    app.state.session_factory = session_factory
    app.state.guard = guard
    app.state.orchestrator = orchestrator

    shutdown_event = asyncio.Event()
    tasks: list[asyncio.Task] = []
    if settings.outbox_relay_enabled:
        tasks.append(asyncio.create_task(relay.run(shutdown_event)))
    if settings.housekeeping_enabled:
        tasks.append(
            asyncio.create_task(
                run_housekeeping(session_factory, relay, guard, orchestrator, settings, shutdown_event)
            )
        )
    if settings.payment_consumer_enabled:
        tasks.append(
            asyncio.create_task(run_payment_consumer(redis_pool, ingress, settings, shutdown_event))
        )

    yield

    # キャンセルはせず、処理中のバッチ / メッセージを終えてから止める
    shutdown_event.set()
    await asyncio.gather(*tasks, return_exceptions=True)
    await redis_pool.aclose()
    await engine.dispose()


def request_context(
    request: Request,
    x_correlation_id: str | None = Header(default=None),
) -> RequestContext:
    ctx = RequestContext.new(x_correlation_id.strip() if x_correlation_id else None)
    request.state.correlation_id = ctx.correlation_id
    return ctx


def _correlation_id(request: Request) -> str:
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        return correlation_id
    return RequestContext.new(request.headers.get("x-correlation-id")).correlation_id


def _error(status_code: int, message: str, request: Request, data=None) -> JSONResponse:
    body = ApiResponse.error(message, _correlation_id(request), data=data)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def create_app(settings: Settings | None = None) -> FastAPI:
    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings or get_settings()

    # ── Exception Handlers ───────────────────────────

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        errors = {
            ".".join(str(part) for part in error["loc"]): error["msg"] for error in exc.errors()
        }
        return _error(400, "Validation failed", request, data=errors)

    @app.exception_handler(NotFoundError)
    async def on_not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc), request)

    @app.exception_handler(ConflictError)
    async def on_conflict(request: Request, exc: ConflictError):
        return _error(409, str(exc), request)

    @app.exception_handler(InvalidTransition)
    async def on_invalid_transition(request: Request, exc: InvalidTransition):
        return _error(409, str(exc), request)

    @app.exception_handler(OrderServiceError)
    async def on_service_error(request: Request, exc: OrderServiceError):
        return _error(500, str(exc), request)

    @app.exception_handler(Exception)
    async def on_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unexpected error occurred", extra={"correlation_id": _correlation_id(request)})
        return _error(500, f"An unexpected error occurred: {exc}", request)

    # ── Command Endpoints (Write 側) ─────────────────

    @app.post("/api/v1/orders", status_code=201)
    async def cmd_create_order(
        req: CreateOrderRequest,
        request: Request,
        idempotency_key: str | None = Header(default=None),
        ctx: RequestContext = Depends(request_context),
    ):
        """
        注文作成コマンド

        Idempotency-Key ヘッダが同じ再送には、最初のレスポンスをそのまま返す。
        新規作成の場合のみ、続けて Saga の支払い要求を出す。
        """
        state = request.app.state
        async with state.session_factory() as session:
            result = await commands.place_order(session, state.guard, req, idempotency_key, ctx)

        order = result.response
        if not result.replayed:
            await state.orchestrator.start_payment_request(
                order.saga_id, order.order_id, order.user_id, order.total_amount, ctx
            )
        return ApiResponse.ok(order, "Order created successfully", ctx.correlation_id)

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/api/v1/orders/user/{user_id}")
    async def query_list_orders(
        user_id: str, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        """ユーザーの注文一覧"""
        async with request.app.state.session_factory() as session:
            orders = await queries.list_orders(session, user_id)
        return ApiResponse.ok(orders, "Orders retrieved successfully", ctx.correlation_id)

    @app.get("/api/v1/orders/{order_id}")
    async def query_get_order(
        order_id: str, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        """指定注文を取得"""
        async with request.app.state.session_factory() as session:
            order = await queries.get_order(session, order_id)
        return ApiResponse.ok(order, "Order retrieved successfully", ctx.correlation_id)

    # ── Outbox / Saga (運用・デバッグ用) ─────────────

    @app.get("/api/v1/orders/{order_id}/outbox")
    async def query_order_outbox(
        order_id: str, request: Request, ctx: RequestContext = Depends(request_context)
    ):
        """指定注文の Outbox 履歴"""
        async with request.app.state.session_factory() as session:
            entries = await outbox.load_events_for_aggregate(session, order_id)
        return ApiResponse.ok(entries, "Outbox events retrieved successfully", ctx.correlation_id)

    @app.get("/api/v1/sagas/stuck")
    async def query_stuck_sagas(
        request: Request,
        older_than_minutes: int = Query(default=30, ge=0),
        ctx: RequestContext = Depends(request_context),
    ):
        """滞留している Saga（検出のみ）"""
        stuck = await request.app.state.orchestrator.recover_stuck_sagas(
            timedelta(minutes=older_than_minutes)
        )
        return ApiResponse.ok(stuck, f"Found {len(stuck)} stuck sagas", ctx.correlation_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app


app = create_app()
