"""
Workflow engine: the only writer of order status and version.

One transition = load -> guard -> claim the order -> (ledger decrement on
Approve) -> versioned order write -> audit append, in that order. Only one
commit per order holds the claim, so a losing duplicate never touches stock.
If the order write fails after stock was taken, the stock is given back
before the error is raised, so the caller sees all or nothing. The commit
runs shielded from caller cancellation.
"""
import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Callable

from order_engine.audit import AuditLog
from order_engine.config import settings
from order_engine.domain import SCOPE_ALL, Actor, AuditEntry, ManagerApproval, Order
from order_engine.errors import (
    ConflictError,
    GuardError,
    InsufficientInventoryError,
    InvalidOrderError,
    OrderEngineError,
    VerificationPendingError,
)
from order_engine.metrics import (
    inventory_compensations_total,
    order_transitions_rejected_total,
    order_transitions_total,
    orders_deleted_total,
)
from order_engine.order_state import (
    AUDIT_ACTIONS,
    PROCESSING_BUCKET,
    PROCESSING_STATES,
    STOCK_COMMIT_COMMAND,
    Command,
    OrderStatus,
    is_terminal,
    lands_in,
    next_state,
)
from order_engine.permissions import (
    require_can_delete,
    require_delivery_verifier,
    require_manager,
    require_operator,
    require_reader,
    scope_for,
)
from order_engine.stores import InventoryLedger, OrderStore

logger = logging.getLogger(__name__)

CommitListener = Callable[[Order], None]

PRICE_PLACES = 2


def _to_decimal(value, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidOrderError(f"{field_name} must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidOrderError(f"{field_name} must be a number") from e
    if not amount.is_finite():
        raise InvalidOrderError(f"{field_name} must be a number")
    # prices are stored as NUMERIC(14, 2)
    if amount.as_tuple().exponent < -PRICE_PLACES:
        raise InvalidOrderError(f"{field_name} has more than {PRICE_PLACES} decimal places", got=str(value))
    return amount


class WorkflowEngine:
    def __init__(
        self,
        orders: OrderStore,
        ledger: InventoryLedger,
        audit: AuditLog,
        listeners: list[CommitListener] | None = None,
    ):
        self.orders = orders
        self.ledger = ledger
        self.audit = audit
        self.listeners: list[CommitListener] = list(listeners or [])
        self._commits: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ reads

    async def get_order(self, order_id: str, actor: Actor | None = None) -> Order:
        """Without an actor this is an internal read; callers on behalf of a user pass one."""
        order = await self.orders.get(order_id)
        if actor is not None:
            require_reader(actor, order)
        return order

    async def list_orders(self, actor: Actor, status: OrderStatus | None = None) -> list[Order]:
        scope = scope_for(actor)
        if scope is None:
            return [o for o in await self.orders.list(status=status) if o.created_by == actor.actor_id]
        return await self.orders.list(company_id=None if scope == SCOPE_ALL else scope, status=status)

    async def order_summary(self, actor: Actor) -> dict[str, int]:
        """Counts per status, plus confirmed + in-progress folded into order_processing."""
        scope = scope_for(actor)
        if scope is None:
            return {}
        counts = await self.orders.count_by_status(None if scope == SCOPE_ALL else scope)
        summary = {s.value: counts.get(s.value, 0) for s in OrderStatus}
        summary[PROCESSING_BUCKET] = sum(summary[s.value] for s in PROCESSING_STATES)
        summary["total"] = sum(counts.values())
        return summary

    async def list_activity(self, actor: Actor, item_id: str | None = None, limit: int = 100) -> list[AuditEntry]:
        scope = scope_for(actor)
        if scope is None:
            return []
        return await self.audit.list(
            company_id=None if scope == SCOPE_ALL else scope,
            item_id=item_id,
            limit=limit,
        )

    # --------------------------------------------------------------- commands

    async def create_order(
        self,
        actor: Actor,
        *,
        product_id: str,
        product_name: str,
        unit_price,
        quantity: int,
        total_price=None,
        company_id: str | None = None,
        message: str = "",
        delivery_date: date | None = None,
        order_id: str | None = None,
    ) -> Order:
        """Insert a new_request order. totalPrice must equal unitPrice * quantity."""
        price = _to_decimal(unit_price, "unit_price")
        if price < 0:
            raise InvalidOrderError("unit_price must not be negative")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidOrderError("quantity must be a positive integer")
        expected_total = price * quantity
        if total_price is not None and _to_decimal(total_price, "total_price") != expected_total:
            raise InvalidOrderError(
                "total_price must equal unit_price * quantity",
                expected=str(expected_total),
                got=str(total_price),
            )

        record = await self.ledger.get(product_id)
        if record is not None and record.available < quantity:
            raise InsufficientInventoryError(product_id, quantity, record.available)

        order = Order(
            id=order_id or uuid.uuid4().hex,
            product_id=product_id,
            product_name=product_name,
            unit_price=price,
            quantity=quantity,
            total_price=expected_total,
            company_id=company_id if company_id is not None else actor.company_id,
            created_by=actor.actor_id,
            message=message,
            delivery_date=delivery_date,
        )
        saved = await self.orders.insert(order)
        logger.info("Created order_id=%s product_id=%s quantity=%d", saved.id, saved.product_id, saved.quantity)
        self._after_commit(saved, actor, "Order Create")
        return saved

    async def apply_transition(
        self,
        order_id: str,
        command: Command | str,
        expected_version: int,
        actor: Actor,
        note: str | None = None,
        request_id: str | None = None,
    ) -> Order:
        try:
            cmd = Command(command)
        except ValueError:
            err = GuardError(f"unknown command {command!r}")
            order_transitions_rejected_total.labels(reason=err.code).inc()
            raise err from None

        try:
            return await self._apply_transition(order_id, cmd, expected_version, actor, note, request_id)
        except OrderEngineError as e:
            order_transitions_rejected_total.labels(reason=e.code).inc()
            logger.info("Rejected %s on order_id=%s: %s (%s)", cmd.value, order_id, e.message, e.code)
            raise

    async def _apply_transition(
        self,
        order_id: str,
        cmd: Command,
        expected_version: int,
        actor: Actor,
        note: str | None,
        request_id: str | None,
    ) -> Order:
        order = await self.orders.get(order_id)
        require_operator(actor, order)

        if order.version != expected_version:
            if (
                request_id is not None
                and order.last_request_id == request_id
                and order.version == expected_version + 1
                and lands_in(cmd, order.status)
            ):
                logger.info("Replayed %s on order_id=%s (request_id=%s)", cmd.value, order_id, request_id)
                return order
            raise ConflictError(order_id, expected_version, order.version)

        target = next_state(order.status, cmd)
        if target is None:
            if is_terminal(order.status):
                msg = f"order is closed ({order.status.value})"
            else:
                msg = f"{cmd.value} is not allowed from {order.status.value}"
            raise GuardError(msg, current_state=order.status.value, command=cmd.value)

        if cmd is Command.DELIVER and not order.delivery_verified:
            raise VerificationPendingError(order_id)

        updated = replace(
            order,
            status=target,
            version=order.version + 1,
            message=note if note is not None else order.message,
            last_transitioned_by=actor.actor_id,
            last_request_id=request_id,
        )

        t = asyncio.create_task(self._commit(order, updated, expected_version, cmd, actor))
        self._commits.add(t)
        t.add_done_callback(self._commits.discard)
        return await asyncio.shield(t)

    async def _commit(
        self,
        order: Order,
        updated: Order,
        expected_version: int,
        cmd: Command,
        actor: Actor,
    ) -> Order:
        # A losing duplicate fails here, before it can take stock another order needs.
        async with self.orders.claim(order.id, expected_version):
            if cmd is STOCK_COMMIT_COMMAND:
                await self.ledger.try_decrement(order.product_id, order.quantity)
                saved = await self._write_or_compensate(order, updated, expected_version)
            else:
                saved = await self.orders.update(updated, expected_version)

        order_transitions_total.labels(command=cmd.value).inc()
        logger.info(
            "Committed %s on order_id=%s: %s -> %s (version %d)",
            cmd.value,
            order.id,
            order.status.value,
            saved.status.value,
            saved.version,
        )
        self._after_commit(saved, actor, AUDIT_ACTIONS[cmd])
        return saved

    async def _write_or_compensate(self, order: Order, updated: Order, expected_version: int) -> Order:
        try:
            return await self.orders.update(updated, expected_version)
        except BaseException as e:
            try:
                await self.ledger.increment(order.product_id, order.quantity)
            except Exception:
                logger.exception(
                    "Compensation failed: %d unit(s) of product_id=%s taken for order_id=%s were not returned",
                    order.quantity,
                    order.product_id,
                    order.id,
                )
                raise e
            inventory_compensations_total.inc()
            logger.warning(
                "Order write failed for order_id=%s (%s); returned %d unit(s) to product_id=%s",
                order.id,
                type(e).__name__,
                order.quantity,
                order.product_id,
            )
            raise

    async def edit_note(
        self,
        order_id: str,
        expected_version: int,
        actor: Actor,
        message: str | None = None,
        delivery_date: date | None = None,
    ) -> Order:
        """Update message and/or delivery date without moving status. Bumps version."""
        try:
            order = await self.orders.get(order_id)
            if order.version != expected_version:
                raise ConflictError(order_id, expected_version, order.version)
            require_operator(actor, order)
            if delivery_date is not None and is_terminal(order.status):
                raise GuardError(
                    "delivery date cannot change on a closed order",
                    current_state=order.status.value,
                )
            if message is None and delivery_date is None:
                return order

            updated = replace(
                order,
                message=message if message is not None else order.message,
                delivery_date=delivery_date if delivery_date is not None else order.delivery_date,
                version=order.version + 1,
                last_transitioned_by=actor.actor_id,
                last_request_id=None,
            )
            async with self.orders.claim(order_id, expected_version):
                saved = await self.orders.update(updated, expected_version)
        except OrderEngineError as e:
            order_transitions_rejected_total.labels(reason=e.code).inc()
            raise
        order_transitions_total.labels(command="EditNote").inc()
        self._after_commit(saved, actor, "Order Updated")
        return saved

    async def set_manager_approval(self, order_id: str, value: ManagerApproval, actor: Actor) -> Order:
        if value not in ("Pending", "Yes", "No"):
            raise InvalidOrderError(f"manager approval must be Pending, Yes or No, got {value!r}")
        order = await self.orders.get(order_id)
        require_manager(actor, order)
        saved = await self.orders.set_external_flag(order_id, "manager_approval", value)
        if value != "Pending":
            action = "Approved order by Manager" if value == "Yes" else "Reject order by Manager"
            self._after_commit(saved, actor, action)
        return saved

    async def verify_delivery(self, order_id: str, verified: bool, actor: Actor) -> Order:
        order = await self.orders.get(order_id)
        require_delivery_verifier(actor, order)
        saved = await self.orders.set_external_flag(order_id, "delivery_verified", bool(verified))
        self._after_commit(saved, actor, "Delivery Verified" if verified else "Delivery Verification Revoked")
        return saved

    async def delete_order(self, order_id: str, actor: Actor) -> None:
        order = await self.orders.get(order_id)
        require_can_delete(actor, order)
        await self.orders.delete(order_id)
        orders_deleted_total.inc()
        logger.info("Deleted order_id=%s (status=%s) by actor_id=%s", order_id, order.status.value, actor.actor_id)
        self._after_commit(order, actor, "Order Deleted")

    # ---------------------------------------------------------------- helpers

    def _after_commit(self, order: Order, actor: Actor, action_type: str) -> None:
        self.audit.append(AuditEntry.for_order(actor, action_type, order.id, settings.global_roles))
        for listener in self.listeners:
            try:
                listener(order)
            except Exception:
                logger.exception("Commit listener failed for order_id=%s", order.id)

    async def drain(self) -> None:
        """Let shielded stock commits finish; used on shutdown."""
        if self._commits:
            await asyncio.gather(*self._commits, return_exceptions=True)
