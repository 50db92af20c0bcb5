from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import FakeProvider
from paper_advisor.models import Holding, Portfolio, Trade
from paper_advisor.portfolio import collect_marks, compute_performance, open_portfolio


START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _trade(minutes: int, side: str, pnl: str | None, fee: str = "1") -> Trade:
    return Trade(
        symbol="BTC",
        side=side,
        quantity=Decimal("1"),
        price=Decimal("100"),
        fee=Decimal(fee),
        slippage=Decimal("0"),
        total_cost=Decimal("100"),
        reasoning="",
        execution_method="manual",
        initiated_by="test",
        executed_at=START + timedelta(minutes=minutes),
        realized_pnl=Decimal(pnl) if pnl is not None else None,
    )


def test_performance_over_closed_trades():
    trades = [
        _trade(0, "BUY", None),
        _trade(10, "SELL", "500"),
        _trade(20, "SELL", "-1050"),
        _trade(30, "SELL", "-450"),
        _trade(40, "SELL", "300"),
    ]

    metrics = compute_performance(list(reversed(trades)), Decimal("10000"))

    assert metrics.closed_trades == 4
    assert metrics.win_count == 2
    assert metrics.loss_count == 2
    assert metrics.win_rate == 0.5
    assert metrics.realized_pnl == -700.0
    assert metrics.total_fees == 5.0
    assert metrics.average_win == 400.0
    assert metrics.average_loss == -750.0
    # peak 10500 after the first close, trough 9000 after the third
    assert metrics.max_drawdown_pct == pytest.approx(0.1429, abs=1e-4)


def test_performance_with_no_trades():
    metrics = compute_performance([], Decimal("10000"))

    assert metrics.closed_trades == 0
    assert metrics.win_rate == 0.0
    assert metrics.max_drawdown_pct == 0.0


def test_open_portfolio_creates_once(db_path):
    first = open_portfolio("fresh", Decimal("2500"), db_path=db_path)
    second = open_portfolio("fresh", Decimal("99999"), db_path=db_path)

    assert first.cash == Decimal("2500")
    assert second.cash == Decimal("2500")


def test_collect_marks_skips_unpriced_holdings():
    provider = FakeProvider()
    provider.add("BTC", price=120.0)
    portfolio = Portfolio(
        portfolio_id="p",
        cash=Decimal("0"),
        holdings={
            "BTC": Holding("BTC", Decimal("1"), Decimal("100")),
            "GONE": Holding("GONE", Decimal("1"), Decimal("5")),
        },
    )

    marks = collect_marks(portfolio, provider)

    assert marks == {"BTC": Decimal("120.0")}
    assert portfolio.total_value(marks) == Decimal("125.0")
