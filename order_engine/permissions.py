"""
Capability checks. These never touch order state or version; they only decide
whether an actor may issue a command against a given order.
"""
from order_engine.config import settings
from order_engine.domain import SCOPE_ALL, Actor, Order
from order_engine.errors import AuthorizationError
from order_engine.order_state import is_terminal


def is_elevated(actor: Actor) -> bool:
    return actor.role in settings.elevated_roles


def is_operator(actor: Actor) -> bool:
    return actor.role in settings.operator_roles


def is_global(actor: Actor) -> bool:
    return actor.role in settings.global_roles


def same_company(actor: Actor, order: Order) -> bool:
    return is_global(actor) or (actor.company_id is not None and actor.company_id == order.company_id)


def scope_for(actor: Actor) -> str | None:
    """Order scope an actor may read: "all", a company id, or None (nothing)."""
    if is_global(actor):
        return SCOPE_ALL
    if is_operator(actor) or actor.role == settings.manager_role:
        return actor.company_id
    return None


def require_operator(actor: Actor, order: Order) -> None:
    if not is_operator(actor):
        raise AuthorizationError(f"role {actor.role!r} cannot change order status", role=actor.role)
    if not same_company(actor, order):
        raise AuthorizationError("order belongs to another company", role=actor.role)


def require_manager(actor: Actor, order: Order) -> None:
    if actor.role != settings.manager_role:
        raise AuthorizationError(f"role {actor.role!r} cannot set manager approval", role=actor.role)
    if not same_company(actor, order):
        raise AuthorizationError("order belongs to another company", role=actor.role)


def require_delivery_verifier(actor: Actor, order: Order) -> None:
    if actor.actor_id == order.created_by:
        return
    if is_operator(actor) and same_company(actor, order):
        return
    raise AuthorizationError("only the ordering customer can verify delivery", role=actor.role)


def require_can_delete(actor: Actor, order: Order) -> None:
    """
    Elevated roles may delete any order (company scoping still applies to
    non-global ones). Everyone else: only a non-terminal order they own, or
    for a Manager any non-terminal order of their company, and never once
    the manager approval flag is "Yes".
    """
    if is_elevated(actor):
        if not same_company(actor, order):
            raise AuthorizationError("order belongs to another company", role=actor.role)
        return
    if order.manager_approval == "Yes":
        raise AuthorizationError("order already approved by manager, can't delete", role=actor.role)
    if is_terminal(order.status):
        raise AuthorizationError("closed orders can only be deleted by an administrator", role=actor.role)
    owns = actor.actor_id == order.created_by
    manages = actor.role == settings.manager_role and same_company(actor, order)
    if not (owns or manages):
        raise AuthorizationError("not the owner of this order", role=actor.role)


def require_reader(actor: Actor, order: Order) -> None:
    """Creators always see their own order; everyone else needs it inside their scope."""
    if actor.actor_id == order.created_by:
        return
    scope = scope_for(actor)
    if scope == SCOPE_ALL or (scope is not None and scope == order.company_id):
        return
    raise AuthorizationError("order is outside your scope", role=actor.role)
