from order_engine.order_state import (
    AUDIT_ACTIONS,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    Command,
    OrderStatus,
    allowed_commands,
    is_terminal,
    is_valid_transition,
    lands_in,
    next_state,
)

FORWARD_ORDER = [
    OrderStatus.NEW_REQUEST,
    OrderStatus.ORDER_CONFIRM,
    OrderStatus.ORDER_IN_PROGRESS,
    OrderStatus.ORDER_DELIVERED,
]


def test_edges_are_exactly_the_fixed_graph():
    assert VALID_TRANSITIONS == {
        (OrderStatus.NEW_REQUEST, Command.APPROVE): OrderStatus.ORDER_CONFIRM,
        (OrderStatus.NEW_REQUEST, Command.REJECT): OrderStatus.ORDER_CANCEL,
        (OrderStatus.ORDER_CONFIRM, Command.START_PROGRESS): OrderStatus.ORDER_IN_PROGRESS,
        (OrderStatus.ORDER_IN_PROGRESS, Command.DELIVER): OrderStatus.ORDER_DELIVERED,
    }


def test_transitions_only_move_forward():
    for (source, _), target in VALID_TRANSITIONS.items():
        if target is OrderStatus.ORDER_CANCEL:
            assert source is OrderStatus.NEW_REQUEST
            continue
        assert FORWARD_ORDER.index(target) == FORWARD_ORDER.index(source) + 1


def test_terminal_states_have_no_outgoing_edges():
    for state in TERMINAL_STATES:
        assert is_terminal(state)
        assert allowed_commands(state) == []
        for cmd in Command:
            assert next_state(state, cmd) is None


def test_skipping_states_is_invalid():
    assert not is_valid_transition(OrderStatus.NEW_REQUEST, Command.START_PROGRESS)
    assert not is_valid_transition(OrderStatus.NEW_REQUEST, Command.DELIVER)
    assert not is_valid_transition(OrderStatus.ORDER_CONFIRM, Command.DELIVER)
    assert not is_valid_transition(OrderStatus.ORDER_CONFIRM, Command.REJECT)


def test_allowed_commands_from_new_request():
    assert set(allowed_commands(OrderStatus.NEW_REQUEST)) == {Command.APPROVE, Command.REJECT}


def test_every_command_has_an_audit_action():
    assert set(AUDIT_ACTIONS) == set(Command)
    assert AUDIT_ACTIONS[Command.APPROVE] == "Order Confirmed"


def test_lands_in_matches_each_command_target():
    assert lands_in(Command.APPROVE, OrderStatus.ORDER_CONFIRM)
    assert lands_in(Command.REJECT, OrderStatus.ORDER_CANCEL)
    assert not lands_in(Command.REJECT, OrderStatus.ORDER_CONFIRM)
    assert not lands_in(Command.DELIVER, OrderStatus.NEW_REQUEST)
