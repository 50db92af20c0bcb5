from decimal import Decimal

import pytest

from paper_advisor.alerts import AlertRouter, EventRecorder
from paper_advisor.db import list_trades, recent_events
from paper_advisor.errors import StageBusyError
from paper_advisor.models import TradeOrder
from paper_advisor.monitor import PositionMonitor


def _open_position(stack, quantity: str = "10") -> None:
    stack.engine.execute(
        TradeOrder(
            portfolio_id="default",
            symbol="BTC",
            side="BUY",
            quantity=Decimal(quantity),
            price=Decimal("100"),
            execution_method="manual",
            initiated_by="test",
            stop_loss=Decimal("95"),
            take_profit=Decimal("110"),
            take_profit_2=Decimal("120"),
        )
    )


def _monitor(stack, strategy: str = "partial") -> PositionMonitor:
    return PositionMonitor(
        stack.provider,
        stack.gate,
        stack.engine,
        stack.load,
        recorder=EventRecorder(AlertRouter(webhook_url=""), db_path=stack.db_path),
        take_profit_strategy=strategy,
        partial_fraction=0.5,
        trailing_pct=0.05,
    )


def test_stop_loss_sells_the_whole_position(stack):
    _open_position(stack)
    stack.provider.add("BTC", price=94.0)

    exits = _monitor(stack).sweep()

    assert [(e.symbol, e.reason, e.partial, e.executed) for e in exits] == [("BTC", "stop_loss", False, True)]
    trade = exits[0].trade
    assert trade.quantity == 10
    assert trade.execution_method == "scheduled"
    assert trade.initiated_by == "stop_loss@95"
    assert "BTC" not in stack.load().holdings
    assert recent_events(db_path=stack.db_path)[0]["event_type"] == "stop_loss"


def test_quiet_price_does_nothing(stack):
    _open_position(stack)
    stack.provider.add("BTC", price=101.0)

    assert _monitor(stack).sweep() == []
    assert len(list_trades("default", db_path=stack.db_path)) == 1


def test_partial_take_profit_then_trailing_then_second_target(stack):
    _open_position(stack)
    monitor = _monitor(stack)
    stack.provider.add("BTC", price=111.0)

    first = monitor.sweep()

    assert first[0].reason == "take_profit" and first[0].partial
    assert first[0].trade.quantity == 5
    holding = stack.load().holdings["BTC"]
    assert holding.quantity == 5
    assert holding.stop_loss == Decimal("100")
    assert holding.take_profit == Decimal("120")
    assert holding.take_profit_2 is None
    assert holding.trailing

    stack.provider.set_price("BTC", 115.0)
    assert monitor.sweep() == []
    assert stack.load().holdings["BTC"].stop_loss == Decimal("109.25")

    # the trailing stop never moves down
    stack.provider.set_price("BTC", 112.0)
    monitor.sweep()
    assert stack.load().holdings["BTC"].stop_loss == Decimal("109.25")

    stack.provider.set_price("BTC", 121.0)
    final = monitor.sweep()
    assert final[0].reason == "take_profit" and not final[0].partial
    assert final[0].trade.quantity == 5
    assert "BTC" not in stack.load().holdings


def test_trailing_stop_exit(stack):
    _open_position(stack)
    monitor = _monitor(stack)
    stack.provider.add("BTC", price=111.0)
    monitor.sweep()
    stack.provider.set_price("BTC", 115.0)
    monitor.sweep()

    stack.provider.set_price("BTC", 109.0)
    exits = monitor.sweep()

    assert exits[0].reason == "stop_loss"
    assert exits[0].trade.initiated_by.startswith("stop_loss@109.25")
    assert exits[0].trade.realized_pnl > 0


def test_full_strategy_sells_everything_at_first_target(stack):
    _open_position(stack)
    stack.provider.add("BTC", price=111.0)

    exits = _monitor(stack, strategy="full").sweep()

    assert exits[0].trade.quantity == 10
    assert not exits[0].partial
    assert stack.load().holdings == {}


def test_missing_price_skips_the_holding(stack):
    _open_position(stack)

    assert _monitor(stack).sweep() == []
    assert "BTC" in stack.load().holdings


def test_sweep_is_single_flight(stack):
    monitor = _monitor(stack)

    with monitor.flight.hold():
        with pytest.raises(StageBusyError):
            monitor.sweep()
