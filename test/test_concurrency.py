"""
Concurrent operators: optimistic versioning on the order, atomic decrements on the product.
"""
import asyncio

import pytest

from _helper import ADMIN, MODERATOR, SUPERADMIN, audit_actions, available, make_service, seed_order
from order_engine.errors import ConflictError, InsufficientInventoryError
from order_engine.memory import MemoryOrderStore
from order_engine.order_state import Command, OrderStatus


class SlowWriteStore(MemoryOrderStore):
    """Versioned writes take a while to land, like a busy database."""

    async def update(self, order, expected_version):
        await asyncio.sleep(0.05)
        return await super().update(order, expected_version)


async def _approve(service, order_id, actor, version=1):
    try:
        return await service.engine.apply_transition(order_id, Command.APPROVE, version, actor)
    except (ConflictError, InsufficientInventoryError) as e:
        return e


async def test_double_approve_commits_once(service):
    order = await seed_order(service, quantity=3, available=10)

    results = await asyncio.gather(
        _approve(service, order.id, ADMIN),
        _approve(service, order.id, MODERATOR),
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(winners) == 1
    assert len(conflicts) == 1
    assert winners[0].version == 2
    assert await available(service) == 7
    assert (await audit_actions(service, order.id)).count("Order Confirmed") == 1


async def test_double_approve_with_exact_stock_is_still_a_conflict(service):
    order = await seed_order(service, quantity=3, available=3)

    results = await asyncio.gather(
        _approve(service, order.id, ADMIN),
        _approve(service, order.id, MODERATOR),
    )

    assert sum(not isinstance(r, Exception) for r in results) == 1
    assert sum(isinstance(r, ConflictError) for r in results) == 1
    assert await available(service) == 0


async def test_exact_stock_double_approve_conflicts_while_the_first_write_is_slow():
    service = make_service(orders=SlowWriteStore())
    order = await seed_order(service, quantity=3, available=3)

    results = await asyncio.gather(
        _approve(service, order.id, ADMIN),
        _approve(service, order.id, MODERATOR),
    )

    assert sum(not isinstance(r, Exception) for r in results) == 1
    assert sum(isinstance(r, ConflictError) for r in results) == 1
    assert await available(service) == 0
    assert (await service.engine.get_order(order.id)).version == 2


async def test_losing_duplicate_approve_leaves_stock_for_other_orders():
    service = make_service(orders=SlowWriteStore())
    first = await seed_order(service, quantity=3, available=6)
    second = await seed_order(service, quantity=3)

    dup_a, dup_b, other = await asyncio.gather(
        _approve(service, first.id, ADMIN),
        _approve(service, first.id, MODERATOR),
        _approve(service, second.id, SUPERADMIN),
    )

    assert sorted(type(r).__name__ for r in (dup_a, dup_b)) == ["ConflictError", "Order"]
    assert other.status is OrderStatus.ORDER_CONFIRM
    assert await available(service) == 0


async def test_claimed_order_refuses_a_second_claim(service):
    order = await seed_order(service)

    async with service.stores.orders.claim(order.id, 1):
        with pytest.raises(ConflictError):
            async with service.stores.orders.claim(order.id, 1):
                pass

    async with service.stores.orders.claim(order.id, 1):
        pass
    with pytest.raises(ConflictError):
        async with service.stores.orders.claim(order.id, 2):
            pass


async def test_many_approvals_for_one_product_never_oversell(service):
    orders = [await seed_order(service, quantity=4, available=10) for _ in range(5)]

    results = await asyncio.gather(*(_approve(service, o.id, SUPERADMIN) for o in orders))

    approved = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, InsufficientInventoryError)]
    assert len(approved) == 2
    assert len(refused) == 3
    assert await available(service) == 2
    for o in orders:
        stored = await service.engine.get_order(o.id)
        expected = OrderStatus.ORDER_CONFIRM if stored.id in {a.id for a in approved} else OrderStatus.NEW_REQUEST
        assert stored.status is expected


async def test_different_orders_progress_independently(service):
    first = await seed_order(service, quantity=1, product_id="prod-a", available=5)
    second = await seed_order(service, quantity=1, product_id="prod-b", available=5)

    a, b = await asyncio.gather(
        _approve(service, first.id, ADMIN),
        _approve(service, second.id, MODERATOR),
    )

    assert a.status is OrderStatus.ORDER_CONFIRM
    assert b.status is OrderStatus.ORDER_CONFIRM
    assert await available(service, "prod-a") == 4
    assert await available(service, "prod-b") == 4


async def test_cancelled_caller_does_not_leave_half_a_transition(service):
    order = await seed_order(service, quantity=3, available=10)

    task = asyncio.create_task(service.engine.apply_transition(order.id, Command.APPROVE, 1, ADMIN))
    # let the command get past loading and into the shielded commit
    for _ in range(3):
        await asyncio.sleep(0)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    await service.engine.drain()

    stored = await service.engine.get_order(order.id)
    stock = await available(service)
    if stored.status is OrderStatus.ORDER_CONFIRM:
        assert stock == 7
        assert stored.version == 2
    else:
        assert stored.status is OrderStatus.NEW_REQUEST
        assert stock == 10
