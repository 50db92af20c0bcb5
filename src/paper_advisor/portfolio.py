from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from .db import ensure_portfolio, list_trades, load_portfolio
from .errors import PersistenceError, ProviderUnavailableError
from .models import Portfolio, Trade, to_decimal
from .settings import settings

if TYPE_CHECKING:
    from .market_data import MarketSnapshotProvider


def open_portfolio(
    portfolio_id: str | None = None,
    starting_cash: Decimal | None = None,
    db_path: Path | None = None,
) -> Portfolio:
    """Load a portfolio, creating it with the starting cash on first use."""
    portfolio_id = portfolio_id or settings.portfolio_id
    cash = starting_cash if starting_cash is not None else to_decimal(settings.starting_cash_usd)
    ensure_portfolio(portfolio_id, cash, db_path=db_path)
    portfolio = load_portfolio(portfolio_id, db_path=db_path)
    if portfolio is None:
        raise PersistenceError(f"Portfolio {portfolio_id} could not be loaded")
    return portfolio


def collect_marks(portfolio: Portfolio, provider: "MarketSnapshotProvider") -> dict[str, Decimal]:
    marks: dict[str, Decimal] = {}
    for symbol in portfolio.holdings:
        try:
            snapshot = provider.get_snapshot(symbol)
        except ProviderUnavailableError as exc:
            logger.warning("No mark for {}: {}", symbol, exc)
            continue
        marks[symbol] = to_decimal(snapshot.price)
    return marks


@dataclass
class PerformanceMetrics:
    closed_trades: int = 0
    win_count: int = 0
    loss_count: int = 0
    win_rate: float = 0.0
    realized_pnl: float = 0.0
    total_fees: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    max_drawdown_pct: float = 0.0


def compute_performance(trades: list[Trade], starting_cash: Decimal) -> PerformanceMetrics:
    """Realized-P&L statistics over the ledger, oldest trade first."""
    ordered = sorted(trades, key=lambda t: (t.executed_at, t.id or 0))
    closes = [t for t in ordered if t.side == "SELL" and t.realized_pnl is not None]
    wins = [float(t.realized_pnl) for t in closes if t.realized_pnl > 0]
    losses = [float(t.realized_pnl) for t in closes if t.realized_pnl <= 0]
    total_fees = sum((t.fee for t in ordered), Decimal("0"))

    # drawdown on the realized equity curve
    peak = float(starting_cash)
    running = float(starting_cash)
    max_dd = 0.0
    for t in closes:
        running += float(t.realized_pnl)
        peak = max(peak, running)
        dd = (peak - running) / peak if peak > 0 else 0.0
        max_dd = max(max_dd, dd)

    return PerformanceMetrics(
        closed_trades=len(closes),
        win_count=len(wins),
        loss_count=len(losses),
        win_rate=round(len(wins) / len(closes), 4) if closes else 0.0,
        realized_pnl=round(sum(wins) + sum(losses), 2),
        total_fees=round(float(total_fees), 2),
        average_win=round(sum(wins) / len(wins), 2) if wins else 0.0,
        average_loss=round(sum(losses) / len(losses), 2) if losses else 0.0,
        max_drawdown_pct=round(max_dd, 4),
    )


def portfolio_performance(portfolio_id: str, db_path: Path | None = None) -> PerformanceMetrics:
    trades = list_trades(portfolio_id, limit=10_000, db_path=db_path)
    return compute_performance(trades, to_decimal(settings.starting_cash_usd))
