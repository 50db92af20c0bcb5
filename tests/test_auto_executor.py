import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from paper_advisor.auto_executor import AutoExecutor, size_position
from paper_advisor.db import active_recommendations, insert_recommendation, list_trades
from paper_advisor.desk import ManualTradeRequest, TradingDesk
from paper_advisor.models import Recommendation, TradeOrder, utc_now
from paper_advisor.monitor import PositionMonitor


def _recommend(db_path, symbol: str, action: str = "BUY", confidence: float = 80.0, stop: float | None = 95.0) -> int:
    now = utc_now()
    rec = Recommendation(
        symbol=symbol,
        action=action,
        confidence=confidence,
        entry_price=100.0,
        stop_loss=stop,
        take_profit_levels=[105.0, 110.0] if action == "BUY" else [],
        position_size_fraction=0.03,
        risk_level="MEDIUM",
        reasoning={"conclusion": "volume breakout"},
        sources=["technical"],
        direction="ENTRY" if action == "BUY" else "EXIT",
        opportunity_reason="breakout" if action == "BUY" else "profit_target",
        urgency="high",
        created_at=now,
        expires_at=now + timedelta(hours=4),
    )
    return insert_recommendation(rec, db_path=db_path)


def _status(db_path, rec_id: int) -> str:
    recs = {r.id: r for r in active_recommendations(db_path=db_path)}
    return recs[rec_id].execution_status


@pytest.fixture
def executor(stack):
    stack.provider.add("BTC", price=100.0)
    stack.provider.add("ETH", price=100.0)
    return AutoExecutor(
        stack.gate,
        stack.engine,
        stack.provider,
        stack.load,
        db_path=stack.db_path,
        min_confidence=60,
        sizing_strategy="equal",
    )


def test_size_position_risks_a_fixed_fraction_and_caps():
    # 2% of 10k at a 5-point stop would be 40 units; the 5% cap allows 5
    assert size_position(Decimal("100"), Decimal("95"), Decimal("10000"), 0.02, 0.05) == Decimal("5")
    assert size_position(Decimal("100"), Decimal("50"), Decimal("10000"), 0.02, 0.05) == Decimal("4")
    assert size_position(Decimal("100"), Decimal("95"), Decimal("10000"), 0.02, 0.05, confidence=80) == Decimal("4")
    assert size_position(Decimal("100"), Decimal("100"), Decimal("10000"), 0.02, 0.05) == 0
    assert size_position(Decimal("3"), Decimal("2"), Decimal("10"), 0.02, 0.05) == Decimal("0.16666666")


def test_buy_recommendation_is_sized_and_executed(executor, stack):
    rec_id = _recommend(stack.db_path, "BTC")

    report = executor.run()

    assert report.executed == [rec_id]
    assert _status(stack.db_path, rec_id) == "executed"
    holding = stack.load().holdings["BTC"]
    assert holding.quantity == 5
    assert holding.stop_loss == Decimal("95")
    assert holding.take_profit == Decimal("105")
    assert holding.take_profit_2 == Decimal("110")
    trade = list_trades("default", db_path=stack.db_path)[0]
    assert trade.execution_method == "auto"
    assert trade.recommendation_id == rec_id


def test_cadence_defers_and_keeps_the_recommendation_pending(executor, stack):
    first = _recommend(stack.db_path, "BTC", confidence=90)
    second = _recommend(stack.db_path, "ETH", confidence=70)

    report = executor.run()

    assert report.executed == [first]
    assert second in report.deferred
    assert _status(stack.db_path, second) == "pending"


def test_tripped_breaker_defers_entries(executor, stack):
    stack.breaker.record_realized_pnl("default", Decimal("-500"), Decimal("10000"))
    rec_id = _recommend(stack.db_path, "BTC")

    report = executor.run()

    assert rec_id in report.deferred
    assert _status(stack.db_path, rec_id) == "pending"


def test_unsized_or_unbacked_recommendations_are_rejected(executor, stack):
    no_stop = _recommend(stack.db_path, "BTC", stop=None)
    no_holding = _recommend(stack.db_path, "ETH", action="SELL")

    report = executor.run()

    assert set(report.rejected) == {no_stop, no_holding}
    assert _status(stack.db_path, no_stop) == "rejected"
    assert list_trades("default", db_path=stack.db_path) == []


def test_sell_recommendation_closes_the_whole_holding(executor, stack):
    stack.engine.execute(
        TradeOrder(
            portfolio_id="default",
            symbol="ETH",
            side="BUY",
            quantity=Decimal("3"),
            price=Decimal("100"),
            execution_method="manual",
            initiated_by="test",
        )
    )
    rec_id = _recommend(stack.db_path, "ETH", action="SELL")

    report = executor.run()

    assert report.executed == [rec_id]
    assert "ETH" not in stack.load().holdings


def test_low_confidence_and_unpriced_recommendations_are_left_alone(executor, stack):
    weak = _recommend(stack.db_path, "BTC", confidence=50)
    unpriced = _recommend(stack.db_path, "GONE")

    report = executor.run()

    assert weak not in report.executed and weak not in report.rejected
    assert unpriced in report.deferred
    assert _status(stack.db_path, weak) == "pending"


class PausingGate:
    """Delegates to a real gate but parks the caller inside validate until released."""

    def __init__(self, gate) -> None:
        self.gate = gate
        self.policy = gate.policy
        self.inside = threading.Event()
        self.release = threading.Event()

    def validate(self, *args, **kwargs):
        self.inside.set()
        self.release.wait(timeout=5)
        return self.gate.validate(*args, **kwargs)


def _buy(stack, symbol: str, quantity: str = "1", stop: str | None = None) -> None:
    stack.engine.execute(
        TradeOrder(
            portfolio_id="default",
            symbol=symbol,
            side="BUY",
            quantity=Decimal(quantity),
            price=Decimal("100"),
            execution_method="manual",
            initiated_by="test",
            stop_loss=Decimal(stop) if stop is not None else None,
        )
    )


def _interleave(first, paused: PausingGate, second) -> None:
    """Run ``first`` until it sits in its risk check, then start ``second`` and let ``first`` go."""
    first_thread = threading.Thread(target=first)
    first_thread.start()
    assert paused.inside.wait(timeout=5)

    second_thread = threading.Thread(target=second)
    second_thread.start()
    second_thread.join(timeout=0.2)
    # the portfolio is held by the stage that is mid-check
    assert second_thread.is_alive()

    paused.release.set()
    first_thread.join(timeout=5)
    second_thread.join(timeout=5)
    assert not first_thread.is_alive() and not second_thread.is_alive()


def test_entry_waiting_on_a_stop_loss_sees_the_tripped_breaker(executor, stack):
    stack.gate.policy.min_trade_interval_minutes = 0
    _buy(stack, "ETH", quantity="10", stop="70")
    stack.provider.set_price("ETH", 60.0)
    rec_id = _recommend(stack.db_path, "BTC")
    paused = PausingGate(stack.gate)
    monitor = PositionMonitor(stack.provider, paused, stack.engine, stack.load, take_profit_strategy="full")
    exits, reports = [], []

    _interleave(lambda: exits.extend(monitor.sweep()), paused, lambda: reports.append(executor.run()))

    assert exits[0].executed
    assert stack.breaker.is_tripped("default", Decimal("9596.8"))
    assert rec_id in reports[0].deferred
    assert reports[0].executed == []
    assert [(t.side, t.symbol) for t in list_trades("default", db_path=stack.db_path)] == [
        ("SELL", "ETH"),
        ("BUY", "ETH"),
    ]
    assert _status(stack.db_path, rec_id) == "pending"


def test_entry_waiting_on_a_manual_buy_respects_the_position_cap(executor, stack):
    stack.gate.policy.min_trade_interval_minutes = 0
    for symbol in ("AAA", "BBB", "CCC", "DDD"):
        _buy(stack, symbol)
    stack.provider.add("SOL", price=100.0)
    rec_id = _recommend(stack.db_path, "BTC")
    paused = PausingGate(stack.gate)
    desk = TradingDesk(paused, stack.engine, stack.provider, stack.load)
    responses, reports = [], []
    request = ManualTradeRequest(symbol="SOL", side="BUY", quantity=1, stop_loss=95)

    _interleave(
        lambda: responses.append(desk.submit_manual_trade(request, confirm_warnings=True)),
        paused,
        lambda: reports.append(executor.run()),
    )

    assert responses[0].status == "executed"
    assert "max open positions" in reports[0].rejected[rec_id]
    holdings = stack.load().holdings
    assert len(holdings) == 5
    assert "BTC" not in holdings
