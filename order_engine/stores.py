"""
Storage seams used by the engine. Two implementations exist: asyncpg-backed
(order_engine.db) and in-process (order_engine.memory); settings.storage_backend
picks one in build_stores().
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncContextManager, Protocol

from order_engine.domain import AuditEntry, InventoryRecord, Order
from order_engine.order_state import OrderStatus


class OrderStore(Protocol):
    async def get(self, order_id: str) -> Order:
        """Raises OrderNotFoundError."""

    async def insert(self, order: Order) -> Order: ...

    def claim(self, order_id: str, expected_version: int) -> AsyncContextManager[None]:
        """
        Reserve the order for one commit while its version is still
        expected_version. A second claim on the same order fails fast with
        ConflictError until the first is released or lapses.
        """

    async def update(self, order: Order, expected_version: int) -> Order:
        """
        Persist engine-owned fields (status, message, delivery_date, version,
        bookkeeping) only if the stored version still equals expected_version.
        Raises ConflictError otherwise.
        """

    async def set_external_flag(self, order_id: str, field: str, value) -> Order:
        """
        Write delivery_verified or manager_approval without touching version.
        Raises GuardError if the order is terminal.
        """

    async def delete(self, order_id: str) -> bool: ...

    async def list(self, company_id: str | None = None, status: OrderStatus | None = None) -> list[Order]: ...

    async def count_by_status(self, company_id: str | None = None) -> dict[str, int]: ...

    async def company_ids(self) -> list[str]: ...


class InventoryLedger(Protocol):
    async def try_decrement(self, product_id: str, amount: int) -> int:
        """Atomically subtract amount; returns new available. Raises InsufficientInventoryError."""

    async def increment(self, product_id: str, amount: int) -> int: ...

    async def get(self, product_id: str) -> InventoryRecord | None: ...

    async def create(self, product_id: str, available: int) -> InventoryRecord: ...


class AuditSink(Protocol):
    async def write(self, entry: AuditEntry) -> None: ...

    async def list(
        self,
        company_id: str | None = None,
        item_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEntry]: ...


class DeadLetterQueue(Protocol):
    async def push(self, body: dict) -> None: ...

    async def push_back(self, bodies: list[dict]) -> None:
        """Return popped bodies so the next pop sees them first, in their original order."""

    async def pop(self, max_items: int) -> list[dict]: ...

    async def length(self) -> int: ...


@dataclass
class Stores:
    orders: OrderStore
    ledger: InventoryLedger
    audit: AuditSink
    dead_letters: DeadLetterQueue


async def build_stores() -> Stores:
    from order_engine.config import settings

    if settings.storage_backend == "memory":
        from order_engine.memory import build_memory_stores
        return build_memory_stores()

    from order_engine.db import build_postgres_stores
    return await build_postgres_stores()


async def close_stores() -> None:
    from order_engine.config import settings

    if settings.storage_backend == "postgres":
        from order_engine.db import close_pool
        from order_engine.redis_client import close_redis
        await close_redis()
        await close_pool()
