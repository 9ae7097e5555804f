"""
In-process stores for STORAGE_BACKEND=memory (local runs and the test suite).
Each store serializes its mutations with an asyncio.Lock and yields to the
loop at every call, so concurrent callers interleave the same way they would
against a real database.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone

from order_engine.config import settings
from order_engine.domain import AuditEntry, InventoryRecord, Order
from order_engine.errors import (
    ConflictError,
    GuardError,
    InsufficientInventoryError,
    InvalidOrderError,
    OrderNotFoundError,
)
from order_engine.order_state import OrderStatus, is_terminal

_ENGINE_FIELDS = (
    "status",
    "message",
    "delivery_date",
    "version",
    "last_transitioned_by",
    "last_request_id",
)


class MemoryOrderStore:
    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()
        # order_id -> (token, lapses_at) of the commit currently holding the order
        self._claims: dict[str, tuple[str, float]] = {}

    async def get(self, order_id: str) -> Order:
        await asyncio.sleep(0)
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return replace(order)

    async def insert(self, order: Order) -> Order:
        async with self._lock:
            await asyncio.sleep(0)
            if order.id in self._orders:
                raise InvalidOrderError(f"order {order.id} already exists", order_id=order.id)
            self._orders[order.id] = replace(order)
            return replace(order)

    @asynccontextmanager
    async def claim(self, order_id: str, expected_version: int):
        token = uuid.uuid4().hex
        async with self._lock:
            await asyncio.sleep(0)
            stored = self._orders.get(order_id)
            if stored is None:
                raise OrderNotFoundError(order_id)
            if stored.version != expected_version:
                raise ConflictError(order_id, expected_version, stored.version)
            held = self._claims.get(order_id)
            if held is not None and held[1] > time.monotonic():
                raise ConflictError(order_id, expected_version, stored.version)
            self._claims[order_id] = (token, time.monotonic() + settings.order_claim_ttl_seconds)
        try:
            yield
        finally:
            if self._claims.get(order_id, (None, 0))[0] == token:
                del self._claims[order_id]

    async def update(self, order: Order, expected_version: int) -> Order:
        async with self._lock:
            await asyncio.sleep(0)
            stored = self._orders.get(order.id)
            if stored is None:
                raise OrderNotFoundError(order.id)
            if stored.version != expected_version:
                raise ConflictError(order.id, expected_version, stored.version)
            changes = {f: getattr(order, f) for f in _ENGINE_FIELDS}
            stored = replace(stored, updated_at=datetime.now(timezone.utc), **changes)
            self._orders[order.id] = stored
            return replace(stored)

    async def set_external_flag(self, order_id: str, field: str, value) -> Order:
        if field not in ("delivery_verified", "manager_approval"):
            raise ValueError(f"{field} is not an externally owned flag")
        async with self._lock:
            await asyncio.sleep(0)
            stored = self._orders.get(order_id)
            if stored is None:
                raise OrderNotFoundError(order_id)
            if is_terminal(stored.status):
                raise GuardError(f"order {order_id} is closed", current_state=stored.status.value)
            stored = replace(stored, updated_at=datetime.now(timezone.utc), **{field: value})
            self._orders[order_id] = stored
            return replace(stored)

    async def delete(self, order_id: str) -> bool:
        async with self._lock:
            await asyncio.sleep(0)
            return self._orders.pop(order_id, None) is not None

    async def list(self, company_id: str | None = None, status: OrderStatus | None = None) -> list[Order]:
        await asyncio.sleep(0)
        orders = [
            replace(o)
            for o in self._orders.values()
            if (company_id is None or o.company_id == company_id)
            and (status is None or o.status == status)
        ]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def count_by_status(self, company_id: str | None = None) -> dict[str, int]:
        await asyncio.sleep(0)
        counts: dict[str, int] = defaultdict(int)
        for o in self._orders.values():
            if company_id is None or o.company_id == company_id:
                counts[o.status.value] += 1
        return dict(counts)

    async def company_ids(self) -> list[str]:
        await asyncio.sleep(0)
        return sorted({o.company_id for o in self._orders.values() if o.company_id is not None})


class MemoryInventoryLedger:
    def __init__(self):
        self._available: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def try_decrement(self, product_id: str, amount: int) -> int:
        async with self._locks[product_id]:
            await asyncio.sleep(0)
            current = self._available.get(product_id, 0)
            if current < amount:
                raise InsufficientInventoryError(product_id, amount, current)
            self._available[product_id] = current - amount
            return self._available[product_id]

    async def increment(self, product_id: str, amount: int) -> int:
        async with self._locks[product_id]:
            await asyncio.sleep(0)
            self._available[product_id] = self._available.get(product_id, 0) + amount
            return self._available[product_id]

    async def get(self, product_id: str) -> InventoryRecord | None:
        await asyncio.sleep(0)
        if product_id not in self._available:
            return None
        return InventoryRecord(product_id=product_id, available=self._available[product_id])

    async def create(self, product_id: str, available: int) -> InventoryRecord:
        if available < 0:
            raise ValueError("available must be non-negative")
        async with self._locks[product_id]:
            self._available[product_id] = available
        return InventoryRecord(product_id=product_id, available=available)


class MemoryAuditSink:
    def __init__(self):
        self.entries: list[AuditEntry] = []

    async def write(self, entry: AuditEntry) -> None:
        await asyncio.sleep(0)
        self.entries.append(entry)

    async def list(
        self,
        company_id: str | None = None,
        item_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        await asyncio.sleep(0)
        matching = [
            (e.timestamp, seq, e)
            for seq, e in enumerate(self.entries)
            if (company_id is None or e.company_id == company_id)
            and (item_id is None or e.item_id == item_id)
        ]
        matching.sort(key=lambda t: (t[0], t[1]), reverse=True)
        return [e for _, _, e in matching[:limit]]


class MemoryDeadLetterQueue:
    def __init__(self):
        self.items: list[dict] = []

    async def push(self, body: dict) -> None:
        self.items.append(body)

    async def push_back(self, bodies: list[dict]) -> None:
        self.items[:0] = bodies

    async def pop(self, max_items: int) -> list[dict]:
        popped, self.items = self.items[:max_items], self.items[max_items:]
        return popped

    async def length(self) -> int:
        return len(self.items)


def build_memory_stores():
    from order_engine.stores import Stores

    return Stores(
        orders=MemoryOrderStore(),
        ledger=MemoryInventoryLedger(),
        audit=MemoryAuditSink(),
        dead_letters=MemoryDeadLetterQueue(),
    )
