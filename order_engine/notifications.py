"""
Pending-order badge counts. A read model over the order store: recomputed on a
fixed cadence (notification_poll_seconds) and early whenever a commit is
signalled. Counts may be stale by up to one polling interval; they are not
real-time and must not be used to make decisions about an order.
"""
import asyncio
import logging
import time

from order_engine.config import settings
from order_engine.domain import SCOPE_ALL, Order
from order_engine.metrics import orders_pending
from order_engine.order_state import OrderStatus
from order_engine.stores import OrderStore

logger = logging.getLogger(__name__)


class NotificationAggregator:
    def __init__(self, orders: OrderStore, poll_seconds: float | None = None):
        self.orders = orders
        self.poll_seconds = poll_seconds if poll_seconds is not None else settings.notification_poll_seconds
        self._counts: dict[str, int] = {}
        self._computed_at: float | None = None
        self._dirty = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def compute(self, scope: str) -> int:
        """Fresh count of new_request orders for a company id, or "all"."""
        counts = await self.orders.count_by_status(None if scope == SCOPE_ALL else scope)
        return counts.get(OrderStatus.NEW_REQUEST.value, 0)

    async def refresh(self) -> dict[str, int]:
        counts = await self.orders.count_by_status(None)
        snapshot = {SCOPE_ALL: counts.get(OrderStatus.NEW_REQUEST.value, 0)}
        for company_id in await self.orders.company_ids():
            snapshot[company_id] = await self.compute(company_id)
        for scope in set(self._counts) - set(snapshot):
            try:
                orders_pending.remove(scope)
            except KeyError:
                pass
        for scope, n in snapshot.items():
            orders_pending.labels(scope=scope).set(n)
        self._counts = snapshot
        self._computed_at = time.time()
        return snapshot

    async def count_pending(self, scope: str) -> int:
        """Last computed count for scope; computes on first use of a scope."""
        if scope in self._counts:
            return self._counts[scope]
        n = await self.compute(scope)
        self._counts[scope] = n
        return n

    @property
    def computed_at(self) -> float | None:
        return self._computed_at

    def notify_committed(self, order: Order) -> None:
        """Commit listener: wake the loop so the next refresh happens now."""
        self._dirty.set()

    async def run(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as e:
                logger.warning("Pending-order refresh failed: %s", e)
            try:
                await asyncio.wait_for(self._dirty.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass
            self._dirty.clear()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
