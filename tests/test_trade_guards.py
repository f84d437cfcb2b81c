"""Transition table and participant guards, checked without any store."""

import pytest

from errors import Forbidden, InvalidState
from models.trade_models import AnyBookOf, FixedBook, TradeAction, TradeStatus, offered_book
from trade_service import (
    ALLOWED_FROM,
    check,
    guard_caller,
    guard_counterparty_mailed,
    guard_transition,
    participant_role,
)


def make_trade(status="pending", **flags):
    trade = {
        "trade_id": "t1",
        "from_user_id": "sender",
        "to_user_id": "receiver",
        "from_book_id": "book-1",
        "to_book_id": "book-2",
        "status": status,
        "from_user_mailed": False,
        "to_user_mailed": False,
        "from_user_received": False,
        "to_user_received": False,
    }
    trade.update(flags)
    return trade


@pytest.mark.parametrize("action", list(TradeAction))
@pytest.mark.parametrize("status", list(TradeStatus))
def test_transition_table(action, status):
    error = guard_transition(make_trade(status.value), action)
    if status in ALLOWED_FROM[action]:
        assert error is None
    else:
        assert isinstance(error, InvalidState)


@pytest.mark.parametrize("status", ["accepted", "declined", "completed", "cancelled"])
@pytest.mark.parametrize("action", [TradeAction.ACCEPT, TradeAction.DECLINE])
def test_accept_and_decline_need_pending(status, action):
    assert isinstance(guard_transition(make_trade(status), action), InvalidState)


def test_terminal_statuses_allow_nothing():
    for status in ("declined", "cancelled"):
        for action in TradeAction:
            assert guard_transition(make_trade(status), action) is not None


@pytest.mark.parametrize(
    "action,caller,allowed",
    [
        (TradeAction.ACCEPT, "receiver", True),
        (TradeAction.ACCEPT, "sender", False),
        (TradeAction.ACCEPT, "stranger", False),
        (TradeAction.DECLINE, "receiver", True),
        (TradeAction.DECLINE, "sender", False),
        (TradeAction.CANCEL, "sender", True),
        (TradeAction.CANCEL, "receiver", False),
        (TradeAction.CANCEL, "stranger", False),
        (TradeAction.MARK_MAILED, "sender", True),
        (TradeAction.MARK_MAILED, "receiver", True),
        (TradeAction.MARK_MAILED, "stranger", False),
        (TradeAction.MARK_RECEIVED, "stranger", False),
        (TradeAction.RELIST, "receiver", True),
        (TradeAction.RELIST, "stranger", False),
    ],
)
def test_guard_caller(action, caller, allowed):
    error = guard_caller(make_trade(), caller, action)
    if allowed:
        assert error is None
    else:
        assert isinstance(error, Forbidden)


def test_participant_role():
    trade = make_trade()
    assert participant_role(trade, "sender") == "from"
    assert participant_role(trade, "receiver") == "to"
    assert participant_role(trade, "stranger") is None


def test_counterparty_mailed_ignores_own_flag():
    # the sender mailed, but the receiver has not: sender cannot receive yet
    trade = make_trade("accepted", from_user_mailed=True)
    assert isinstance(guard_counterparty_mailed(trade, "sender"), InvalidState)
    assert guard_counterparty_mailed(trade, "receiver") is None


def test_check_raises_first_error():
    first = Forbidden("first")
    with pytest.raises(Forbidden) as excinfo:
        check(None, first, InvalidState("second"))
    assert excinfo.value is first
    check(None, None)


def test_offered_book_selector():
    assert offered_book(make_trade()) == FixedBook("book-1")
    assert offered_book(make_trade(from_book_id=None)) == AnyBookOf("sender")
