"""
Async Postgres: orders (versioned current state), inventory (per-product
stock counter) and audit_log (append-only activity log).
Every order write is a conditional UPDATE on version; every stock change is a
single conditional UPDATE, so no caller ever reads-then-writes across round trips.
A commit first claims its order with a leased token (claim_token, claimed_until)
so only one commit per order is in flight across all API processes.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager

import asyncpg

from order_engine.config import settings
from order_engine.domain import AuditEntry, InventoryRecord, Order
from order_engine.errors import (
    ConflictError,
    GuardError,
    InsufficientInventoryError,
    OrderNotFoundError,
    TransientStoreError,
)
from order_engine.order_state import TERMINAL_STATES, OrderStatus

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None

_TRANSIENT_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.TooManyConnectionsError,
    OSError,
    asyncio.TimeoutError,
)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATES]

EXTERNAL_FLAGS = {"delivery_verified", "manager_approval"}


@asynccontextmanager
async def _io(what: str):
    try:
        yield
    except _TRANSIENT_ERRORS as e:
        raise TransientStoreError(f"{what} failed: {e}") from e


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        async with _io("connect"):
            _pool = await asyncpg.create_pool(
                settings.database_url,
                min_size=1,
                max_size=10,
                command_timeout=60,
            )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(255) PRIMARY KEY,
                product_id VARCHAR(255) NOT NULL,
                product_name VARCHAR(255) NOT NULL,
                unit_price NUMERIC(14, 2) NOT NULL,
                quantity INT NOT NULL CHECK (quantity > 0),
                total_price NUMERIC(14, 2) NOT NULL,
                company_id VARCHAR(255),
                created_by VARCHAR(255) NOT NULL,
                status VARCHAR(50) NOT NULL,
                delivery_verified BOOLEAN NOT NULL DEFAULT FALSE,
                manager_approval VARCHAR(20) NOT NULL DEFAULT 'Pending',
                message TEXT NOT NULL DEFAULT '',
                delivery_date DATE,
                version INT NOT NULL DEFAULT 1,
                last_transitioned_by VARCHAR(255),
                last_request_id VARCHAR(255),
                claim_token VARCHAR(64),
                claimed_until TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            ALTER TABLE orders
                ADD COLUMN IF NOT EXISTS claim_token VARCHAR(64),
                ADD COLUMN IF NOT EXISTS claimed_until TIMESTAMPTZ;
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_company_status
            ON orders(company_id, status);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS inventory (
                product_id VARCHAR(255) PRIMARY KEY,
                available INT NOT NULL CHECK (available >= 0)
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id BIGSERIAL PRIMARY KEY,
                ts TIMESTAMPTZ NOT NULL,
                actor JSONB NOT NULL,
                category VARCHAR(50) NOT NULL,
                action_type VARCHAR(100) NOT NULL,
                item_id VARCHAR(255) NOT NULL,
                company_id VARCHAR(255)
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_log_item_ts
            ON audit_log(item_id, ts);
        """)


def _row_to_order(row: asyncpg.Record) -> Order:
    return Order(
        id=row["id"],
        product_id=row["product_id"],
        product_name=row["product_name"],
        unit_price=row["unit_price"],
        quantity=row["quantity"],
        total_price=row["total_price"],
        company_id=row["company_id"],
        created_by=row["created_by"],
        status=OrderStatus(row["status"]),
        delivery_verified=row["delivery_verified"],
        manager_approval=row["manager_approval"],
        message=row["message"],
        delivery_date=row["delivery_date"],
        version=row["version"],
        last_transitioned_by=row["last_transitioned_by"],
        last_request_id=row["last_request_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get(self, order_id: str) -> Order:
        async with _io("load order"):
            row = await self.pool.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
        if row is None:
            raise OrderNotFoundError(order_id)
        return _row_to_order(row)

    async def insert(self, order: Order) -> Order:
        async with _io("insert order"):
            row = await self.pool.fetchrow(
                """
                INSERT INTO orders (id, product_id, product_name, unit_price, quantity, total_price,
                                    company_id, created_by, status, message, delivery_date, version)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                RETURNING *;
                """,
                order.id,
                order.product_id,
                order.product_name,
                order.unit_price,
                order.quantity,
                order.total_price,
                order.company_id,
                order.created_by,
                order.status.value,
                order.message,
                order.delivery_date,
                order.version,
            )
        return _row_to_order(row)

    @asynccontextmanager
    async def claim(self, order_id: str, expected_version: int):
        token = uuid.uuid4().hex
        async with _io("claim order"):
            claimed = await self.pool.fetchval(
                """
                UPDATE orders
                SET claim_token = $3, claimed_until = NOW() + make_interval(secs => $4)
                WHERE id = $1 AND version = $2
                  AND (claim_token IS NULL OR claimed_until < NOW())
                RETURNING id;
                """,
                order_id,
                expected_version,
                token,
                settings.order_claim_ttl_seconds,
            )
            if claimed is None:
                current = await self.pool.fetchval("SELECT version FROM orders WHERE id = $1;", order_id)
        if claimed is None:
            if current is None:
                raise OrderNotFoundError(order_id)
            raise ConflictError(order_id, expected_version, current)
        try:
            yield
        finally:
            try:
                async with _io("release order claim"):
                    await self.pool.execute(
                        """
                        UPDATE orders SET claim_token = NULL, claimed_until = NULL
                        WHERE id = $1 AND claim_token = $2;
                        """,
                        order_id,
                        token,
                    )
            except TransientStoreError as e:
                # the claim lapses on its own after order_claim_ttl_seconds
                logger.warning("Could not release claim on order_id=%s: %s", order_id, e.message)

    async def update(self, order: Order, expected_version: int) -> Order:
        async with _io("write order"):
            row = await self.pool.fetchrow(
                """
                UPDATE orders
                SET status = $3, message = $4, delivery_date = $5, version = $6,
                    last_transitioned_by = $7, last_request_id = $8, updated_at = NOW()
                WHERE id = $1 AND version = $2
                RETURNING *;
                """,
                order.id,
                expected_version,
                order.status.value,
                order.message,
                order.delivery_date,
                order.version,
                order.last_transitioned_by,
                order.last_request_id,
            )
            if row is None:
                current = await self.pool.fetchval("SELECT version FROM orders WHERE id = $1;", order.id)
        if row is None:
            if current is None:
                raise OrderNotFoundError(order.id)
            raise ConflictError(order.id, expected_version, current)
        return _row_to_order(row)

    async def set_external_flag(self, order_id: str, field: str, value) -> Order:
        if field not in EXTERNAL_FLAGS:
            raise ValueError(f"{field} is not an externally owned flag")
        async with _io("write order flag"):
            row = await self.pool.fetchrow(
                f"""
                UPDATE orders SET {field} = $2, updated_at = NOW()
                WHERE id = $1 AND status <> ALL($3::varchar[])
                RETURNING *;
                """,
                order_id,
                value,
                _TERMINAL_VALUES,
            )
            if row is None:
                status = await self.pool.fetchval("SELECT status FROM orders WHERE id = $1;", order_id)
        if row is None:
            if status is None:
                raise OrderNotFoundError(order_id)
            raise GuardError(f"order {order_id} is closed", current_state=status)
        return _row_to_order(row)

    async def delete(self, order_id: str) -> bool:
        async with _io("delete order"):
            result = await self.pool.execute("DELETE FROM orders WHERE id = $1;", order_id)
        return result.endswith(" 1")

    async def list(self, company_id: str | None = None, status: OrderStatus | None = None) -> list[Order]:
        async with _io("list orders"):
            rows = await self.pool.fetch(
                """
                SELECT * FROM orders
                WHERE ($1::varchar IS NULL OR company_id = $1)
                  AND ($2::varchar IS NULL OR status = $2)
                ORDER BY created_at DESC;
                """,
                company_id,
                status.value if status else None,
            )
        return [_row_to_order(r) for r in rows]

    async def count_by_status(self, company_id: str | None = None) -> dict[str, int]:
        async with _io("count orders"):
            rows = await self.pool.fetch(
                """
                SELECT status, COUNT(*) AS n FROM orders
                WHERE ($1::varchar IS NULL OR company_id = $1)
                GROUP BY status;
                """,
                company_id,
            )
        return {r["status"]: r["n"] for r in rows}

    async def company_ids(self) -> list[str]:
        async with _io("list companies"):
            rows = await self.pool.fetch(
                "SELECT DISTINCT company_id FROM orders WHERE company_id IS NOT NULL;"
            )
        return [r["company_id"] for r in rows]


class PostgresInventoryLedger:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def try_decrement(self, product_id: str, amount: int) -> int:
        async with _io("decrement inventory"):
            new_available = await self.pool.fetchval(
                """
                UPDATE inventory SET available = available - $2
                WHERE product_id = $1 AND available >= $2
                RETURNING available;
                """,
                product_id,
                amount,
            )
            if new_available is None:
                current = await self.pool.fetchval(
                    "SELECT available FROM inventory WHERE product_id = $1;", product_id
                )
        if new_available is None:
            raise InsufficientInventoryError(product_id, amount, current or 0)
        return new_available

    async def increment(self, product_id: str, amount: int) -> int:
        async with _io("increment inventory"):
            new_available = await self.pool.fetchval(
                """
                INSERT INTO inventory (product_id, available) VALUES ($1, $2)
                ON CONFLICT (product_id) DO UPDATE SET available = inventory.available + EXCLUDED.available
                RETURNING available;
                """,
                product_id,
                amount,
            )
        return new_available

    async def get(self, product_id: str) -> InventoryRecord | None:
        async with _io("read inventory"):
            available = await self.pool.fetchval(
                "SELECT available FROM inventory WHERE product_id = $1;", product_id
            )
        if available is None:
            return None
        return InventoryRecord(product_id=product_id, available=available)

    async def create(self, product_id: str, available: int) -> InventoryRecord:
        async with _io("create inventory"):
            await self.pool.execute(
                "INSERT INTO inventory (product_id, available) VALUES ($1, $2);",
                product_id,
                available,
            )
        return InventoryRecord(product_id=product_id, available=available)


class PostgresAuditSink:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def write(self, entry: AuditEntry) -> None:
        async with _io("append audit entry"):
            await self.pool.execute(
                """
                INSERT INTO audit_log (ts, actor, category, action_type, item_id, company_id)
                VALUES ($1, $2::jsonb, $3, $4, $5, $6);
                """,
                entry.timestamp,
                json.dumps(entry.actor),
                entry.category,
                entry.action_type,
                entry.item_id,
                entry.company_id,
            )

    async def list(
        self,
        company_id: str | None = None,
        item_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        async with _io("list audit entries"):
            rows = await self.pool.fetch(
                """
                SELECT * FROM audit_log
                WHERE ($1::varchar IS NULL OR company_id = $1)
                  AND ($2::varchar IS NULL OR item_id = $2)
                ORDER BY ts DESC, id DESC
                LIMIT $3;
                """,
                company_id,
                item_id,
                limit,
            )
        return [
            AuditEntry(
                timestamp=r["ts"],
                actor=json.loads(r["actor"]),
                category=r["category"],
                action_type=r["action_type"],
                item_id=r["item_id"],
                company_id=r["company_id"],
            )
            for r in rows
        ]


async def build_postgres_stores():
    from order_engine.redis_client import RedisDeadLetterQueue
    from order_engine.stores import Stores

    pool = await get_pool()
    async with _io("init schema"):
        await init_schema(pool)
    return Stores(
        orders=PostgresOrderStore(pool),
        ledger=PostgresInventoryLedger(pool),
        audit=PostgresAuditSink(pool),
        dead_letters=RedisDeadLetterQueue(),
    )
