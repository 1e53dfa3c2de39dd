"""
Order Service — テーブル定義とエンジン

注文・Saga・Outbox・冪等キーはすべて同じ DB に置く。
同じトランザクション (= 1 つの AsyncSession の commit) で
ドメインの変更と Outbox への書き込みをまとめるため。
"""

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

metadata = MetaData()

# SQLite では INTEGER PRIMARY KEY でないと自動採番されない
_SequenceId = BigInteger().with_variant(Integer(), "sqlite")

orders = Table(
    "orders",
    metadata,
    Column("order_id", String(20), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("status", String(50), nullable=False),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("payment_id", String(64)),
    Column("shipping_address", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("version", Integer, nullable=False, default=0),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("id", _SequenceId, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        String(20),
        ForeignKey("orders.order_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("product_id", String(36), nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
)

order_saga = Table(
    "order_saga",
    metadata,
    Column("saga_id", String(36), primary_key=True),
    Column("order_id", String(20), nullable=False, index=True),
    Column("state", String(50), nullable=False),
    Column("payload", Text, nullable=False),
    Column("last_updated", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_order_saga_state_last_updated", "state", "last_updated"),
)

outbox_events = Table(
    "outbox_events",
    metadata,
    Column("id", _SequenceId, primary_key=True, autoincrement=True),
    Column("aggregate_type", String(50), nullable=False),
    Column("aggregate_id", String(64), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("payload", Text, nullable=False),
    Column("published", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("published_at", DateTime(timezone=True)),
    Index("ix_outbox_published_created", "published", "created_at", "id"),
)

idempotency_keys = Table(
    "idempotency_keys",
    metadata,
    Column("idempotency_key", String(255), primary_key=True),
    Column("response_payload", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
)


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する（開発・テスト用）。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def as_utc(value: datetime | None) -> datetime | None:
    """タイムゾーン情報を持たない値 (SQLite) を UTC として扱う。"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
