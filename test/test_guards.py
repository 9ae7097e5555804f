"""
Guard and capability failures leave the order exactly as it was.
"""
from datetime import date

import pytest

from _helper import ADMIN, CUSTOMER, MODERATOR, OTHER_MODERATOR, SUPERADMIN, audit_actions, seed_order
from order_engine.domain import Actor
from order_engine.errors import (
    AuthorizationError,
    ConflictError,
    GuardError,
    OrderNotFoundError,
    VerificationPendingError,
)
from order_engine.order_state import Command, OrderStatus


async def _in_progress(service):
    order = await seed_order(service)
    order = await service.engine.apply_transition(order.id, Command.APPROVE, 1, ADMIN)
    return await service.engine.apply_transition(order.id, Command.START_PROGRESS, 2, ADMIN)


@pytest.mark.parametrize("command", [Command.START_PROGRESS, Command.DELIVER])
async def test_skipping_states_is_rejected(service, command):
    order = await seed_order(service)

    with pytest.raises(GuardError) as exc_info:
        await service.engine.apply_transition(order.id, command, 1, ADMIN)

    assert exc_info.value.current_state == "new_request"
    stored = await service.engine.get_order(order.id)
    assert stored.status is OrderStatus.NEW_REQUEST
    assert stored.version == 1


async def test_deliver_unverified_is_verification_pending(service):
    order = await _in_progress(service)

    for _ in range(3):
        with pytest.raises(VerificationPendingError) as exc_info:
            await service.engine.apply_transition(order.id, Command.DELIVER, 3, ADMIN)
        assert exc_info.value.code == "verification_pending"

    stored = await service.engine.get_order(order.id)
    assert stored.status is OrderStatus.ORDER_IN_PROGRESS
    assert stored.version == 3
    assert "Order Delivered" not in await audit_actions(service, order.id)


async def test_terminal_order_rejects_every_command(service):
    order = await seed_order(service)
    order = await service.engine.apply_transition(order.id, Command.REJECT, 1, ADMIN)

    for command in Command:
        with pytest.raises(GuardError):
            await service.engine.apply_transition(order.id, command, 2, ADMIN)

    stored = await service.engine.get_order(order.id)
    assert stored.status is OrderStatus.ORDER_CANCEL
    assert stored.version == 2


async def test_approve_twice_is_rejected_not_repeated(service):
    order = await seed_order(service)
    await service.engine.apply_transition(order.id, Command.APPROVE, 1, ADMIN)

    with pytest.raises(GuardError):
        await service.engine.apply_transition(order.id, Command.APPROVE, 2, ADMIN)


async def test_stale_version_is_a_conflict(service):
    order = await seed_order(service)
    await service.engine.apply_transition(order.id, Command.APPROVE, 1, ADMIN)

    with pytest.raises(ConflictError) as exc_info:
        await service.engine.apply_transition(order.id, Command.START_PROGRESS, 1, ADMIN)

    assert exc_info.value.retryable is True
    assert exc_info.value.current_version == 2


async def test_retry_with_same_request_id_is_idempotent(service):
    order = await seed_order(service, quantity=3, available=10)

    first = await service.engine.apply_transition(order.id, Command.APPROVE, 1, ADMIN, request_id="req-42")
    again = await service.engine.apply_transition(order.id, Command.APPROVE, 1, ADMIN, request_id="req-42")

    assert again.version == first.version == 2
    assert (await service.stores.ledger.get("prod-1")).available == 7
    assert (await audit_actions(service, order.id)).count("Order Confirmed") == 1


async def test_replayed_request_id_still_needs_the_capability(service):
    order = await seed_order(service, quantity=3, available=10)
    await service.engine.apply_transition(order.id, Command.APPROVE, 1, ADMIN, request_id="req-7")

    with pytest.raises(AuthorizationError):
        await service.engine.apply_transition(order.id, Command.APPROVE, 1, CUSTOMER, request_id="req-7")
    with pytest.raises(AuthorizationError):
        await service.engine.apply_transition(order.id, Command.APPROVE, 1, OTHER_MODERATOR, request_id="req-7")


async def test_replayed_request_id_with_another_command_conflicts(service):
    order = await seed_order(service, quantity=3, available=10)
    await service.engine.apply_transition(order.id, Command.APPROVE, 1, ADMIN, request_id="req-8")

    with pytest.raises(ConflictError):
        await service.engine.apply_transition(order.id, Command.REJECT, 1, ADMIN, request_id="req-8")
    assert (await service.engine.get_order(order.id)).status is OrderStatus.ORDER_CONFIRM


async def test_unknown_command_is_a_guard_error(service):
    order = await seed_order(service)
    with pytest.raises(GuardError):
        await service.engine.apply_transition(order.id, "Ship", 1, ADMIN)


async def test_missing_order(service):
    with pytest.raises(OrderNotFoundError):
        await service.engine.apply_transition("nope", Command.APPROVE, 1, ADMIN)


async def test_customer_cannot_change_status(service):
    order = await seed_order(service)
    with pytest.raises(AuthorizationError):
        await service.engine.apply_transition(order.id, Command.APPROVE, 1, CUSTOMER)
    assert (await service.engine.get_order(order.id)).version == 1


async def test_operator_of_another_company_is_refused(service):
    order = await seed_order(service, company_id="co-1")
    with pytest.raises(AuthorizationError):
        await service.engine.apply_transition(order.id, Command.APPROVE, 1, OTHER_MODERATOR)


async def test_global_role_can_act_on_any_company(service):
    order = await seed_order(service, company_id="co-9")
    order = await service.engine.apply_transition(order.id, Command.APPROVE, 1, SUPERADMIN)
    assert order.status is OrderStatus.ORDER_CONFIRM


async def test_edit_note_bumps_version_only(service):
    order = await seed_order(service)

    edited = await service.engine.edit_note(
        order.id, 1, MODERATOR, message="Call before delivery", delivery_date=date(2026, 11, 2)
    )

    assert edited.status is OrderStatus.NEW_REQUEST
    assert edited.version == 2
    assert edited.message == "Call before delivery"
    assert edited.delivery_date == date(2026, 11, 2)
    assert (await service.stores.ledger.get("prod-1")).available == 10


async def test_edit_note_with_stale_version_conflicts(service):
    order = await seed_order(service)
    await service.engine.edit_note(order.id, 1, MODERATOR, message="first")

    with pytest.raises(ConflictError):
        await service.engine.edit_note(order.id, 1, MODERATOR, message="second")
    assert (await service.engine.get_order(order.id)).message == "first"


async def test_closed_order_keeps_message_editable_but_not_delivery_date(service):
    order = await seed_order(service)
    order = await service.engine.apply_transition(order.id, Command.REJECT, 1, ADMIN)

    edited = await service.engine.edit_note(order.id, 2, ADMIN, message="Customer asked to cancel")
    assert edited.message == "Customer asked to cancel"
    assert edited.status is OrderStatus.ORDER_CANCEL

    with pytest.raises(GuardError):
        await service.engine.edit_note(order.id, 3, ADMIN, delivery_date=date(2026, 12, 1))


async def test_delivery_verification_refused_on_closed_order(service):
    order = await seed_order(service)
    await service.engine.apply_transition(order.id, Command.REJECT, 1, ADMIN)

    with pytest.raises(GuardError):
        await service.engine.verify_delivery(order.id, True, CUSTOMER)


async def test_only_owner_or_operator_verifies_delivery(service):
    order = await seed_order(service, actor=CUSTOMER)
    stranger = Actor(actor_id="cust-2", role="Customer", company_id="co-1")

    with pytest.raises(AuthorizationError):
        await service.engine.verify_delivery(order.id, True, stranger)
