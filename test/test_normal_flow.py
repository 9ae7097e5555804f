"""
Normal flow: new_request -> order_confirm -> order_in_progress -> order_delivered,
with stock committed once on Approve and one audit entry per committed step.
"""
from decimal import Decimal

import pytest

from _helper import ADMIN, CUSTOMER, MODERATOR, audit_actions, available, seed_order
from order_engine.errors import GuardError, InvalidOrderError, VerificationPendingError
from order_engine.order_state import Command, OrderStatus


async def test_full_lifecycle(service):
    order = await seed_order(service, quantity=3, unit_price=10, available=10)
    assert order.status is OrderStatus.NEW_REQUEST
    assert order.version == 1
    assert order.total_price == Decimal("30")

    order = await service.engine.apply_transition(order.id, Command.APPROVE, 1, ADMIN)
    assert order.status is OrderStatus.ORDER_CONFIRM
    assert order.version == 2
    assert await available(service) == 7

    order = await service.engine.apply_transition(order.id, Command.START_PROGRESS, 2, MODERATOR)
    assert order.status is OrderStatus.ORDER_IN_PROGRESS
    assert order.version == 3

    with pytest.raises(VerificationPendingError) as exc_info:
        await service.engine.apply_transition(order.id, Command.DELIVER, 3, MODERATOR)
    assert isinstance(exc_info.value, GuardError)
    unchanged = await service.engine.get_order(order.id)
    assert unchanged.status is OrderStatus.ORDER_IN_PROGRESS
    assert unchanged.version == 3

    verified = await service.engine.verify_delivery(order.id, True, CUSTOMER)
    assert verified.delivery_verified is True
    assert verified.version == 3

    order = await service.engine.apply_transition(order.id, Command.DELIVER, 3, MODERATOR)
    assert order.status is OrderStatus.ORDER_DELIVERED
    assert order.version == 4
    assert order.total_price == Decimal("30")
    assert await available(service) == 7

    assert await audit_actions(service, order.id) == [
        "Order Create",
        "Order Confirmed",
        "Order in Progress",
        "Delivery Verified",
        "Order Delivered",
    ]


async def test_reject_cancels_without_touching_stock(service):
    order = await seed_order(service, quantity=4, available=10)

    order = await service.engine.apply_transition(order.id, "Reject", 1, ADMIN, note="Out of season")

    assert order.status is OrderStatus.ORDER_CANCEL
    assert order.message == "Out of season"
    assert order.version == 2
    assert await available(service) == 10
    assert await audit_actions(service, order.id) == ["Order Create", "Order Cancelled"]


async def test_audit_entry_records_actor(service):
    order = await seed_order(service)
    await service.engine.apply_transition(order.id, Command.APPROVE, 1, ADMIN)
    await service.audit.drain(timeout=5)

    entries = await service.stores.audit.list(item_id=order.id)
    confirmed = entries[0]
    assert confirmed.action_type == "Order Confirmed"
    assert confirmed.category == "Order"
    assert confirmed.actor == {"id": "admin-1", "role": "Admin", "name": "Ada Admin"}
    assert confirmed.company_id == "co-1"


@pytest.mark.parametrize("unit_price", ["0.333", "10.005", "NaN"])
async def test_prices_must_fit_two_decimal_places(service, unit_price):
    with pytest.raises(InvalidOrderError):
        await seed_order(service, unit_price=unit_price)


async def test_cent_prices_keep_the_total_exact(service):
    order = await seed_order(service, quantity=3, unit_price="0.33")
    assert order.total_price == Decimal("0.99")
