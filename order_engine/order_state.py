"""
Order lifecycle state machine. The graph is fixed: strictly forward, no skips.

    new_request -> order_confirm -> order_in_progress -> order_delivered
    new_request -> order_cancel
"""
from enum import Enum


class OrderStatus(str, Enum):
    NEW_REQUEST = "new_request"
    ORDER_CONFIRM = "order_confirm"
    ORDER_IN_PROGRESS = "order_in_progress"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCEL = "order_cancel"


class Command(str, Enum):
    APPROVE = "Approve"
    REJECT = "Reject"
    START_PROGRESS = "StartProgress"
    DELIVER = "Deliver"


TERMINAL_STATES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.ORDER_DELIVERED, OrderStatus.ORDER_CANCEL}
)

# (current state, command) -> next state
VALID_TRANSITIONS: dict[tuple[OrderStatus, Command], OrderStatus] = {
    (OrderStatus.NEW_REQUEST, Command.APPROVE): OrderStatus.ORDER_CONFIRM,
    (OrderStatus.NEW_REQUEST, Command.REJECT): OrderStatus.ORDER_CANCEL,
    (OrderStatus.ORDER_CONFIRM, Command.START_PROGRESS): OrderStatus.ORDER_IN_PROGRESS,
    (OrderStatus.ORDER_IN_PROGRESS, Command.DELIVER): OrderStatus.ORDER_DELIVERED,
}

# The single edge that commits stock.
STOCK_COMMIT_COMMAND = Command.APPROVE

# Activity log action names, as shown on the dashboard's activity page.
AUDIT_ACTIONS: dict[Command, str] = {
    Command.APPROVE: "Order Confirmed",
    Command.REJECT: "Order Cancelled",
    Command.START_PROGRESS: "Order in Progress",
    Command.DELIVER: "Order Delivered",
}

# Summary bucket that folds confirmed and in-progress orders together.
PROCESSING_BUCKET = "order_processing"
PROCESSING_STATES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.ORDER_CONFIRM, OrderStatus.ORDER_IN_PROGRESS}
)


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def next_state(current_state: OrderStatus, command: Command) -> OrderStatus | None:
    """Target state for command, or None if the edge does not exist."""
    return VALID_TRANSITIONS.get((current_state, command))


def is_valid_transition(current_state: OrderStatus, command: Command) -> bool:
    """True if command is allowed from current_state."""
    return next_state(current_state, command) is not None


def allowed_commands(current_state: OrderStatus) -> list[Command]:
    return [cmd for (state, cmd) in VALID_TRANSITIONS if state == current_state]


def lands_in(command: Command, status: OrderStatus) -> bool:
    """True if some edge labelled command ends in status."""
    return any(cmd == command and target == status for (_, cmd), target in VALID_TRANSITIONS.items())
