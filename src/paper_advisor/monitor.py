from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Literal

from loguru import logger

from .alerts import EventRecorder
from .errors import ExecutionError, ProviderUnavailableError
from .execution import MONEY_QUANT, ExecutionEngine
from .market_data import MarketSnapshotProvider
from .models import Holding, MarketSnapshot, Portfolio, Trade, TradeOrder, TradeProposal, to_decimal
from .resilience import SingleFlight
from .risk import RiskGate
from .settings import settings


ExitReason = Literal["stop_loss", "take_profit"]


@dataclass
class ForcedExit:
    symbol: str
    reason: ExitReason
    quantity: Decimal
    price: Decimal
    partial: bool
    trade: Trade | None = None
    blocked_reason: str | None = None

    @property
    def executed(self) -> bool:
        return self.trade is not None


class PositionMonitor:
    """Recurring sweep closing positions on stop-loss and take-profit crossings.

    With the ``partial`` strategy the first take-profit hit sells a fraction,
    moves the stop to breakeven, promotes the second target and turns on a
    trailing stop that only ever moves up.
    """

    def __init__(
        self,
        provider: MarketSnapshotProvider,
        gate: RiskGate,
        engine: ExecutionEngine,
        portfolio_loader: Callable[[], Portfolio],
        recorder: EventRecorder | None = None,
        take_profit_strategy: str | None = None,
        partial_fraction: float | None = None,
        trailing_pct: float | None = None,
    ) -> None:
        self.provider = provider
        self.gate = gate
        self.engine = engine
        self.portfolio_loader = portfolio_loader
        self.recorder = recorder
        self.take_profit_strategy = take_profit_strategy or settings.take_profit_strategy
        self.partial_fraction = to_decimal(partial_fraction or settings.partial_take_profit_fraction)
        self.trailing_pct = to_decimal(trailing_pct or settings.trailing_stop_pct)
        self.flight = SingleFlight("monitor")

    def sweep(self) -> list[ForcedExit]:
        with self.flight.hold():
            portfolio = self.portfolio_loader()
            exits: list[ForcedExit] = []
            for symbol in sorted(portfolio.holdings):
                forced = self._check_symbol(portfolio.portfolio_id, symbol)
                if forced is not None:
                    exits.append(forced)
            if exits:
                logger.info("Monitor: {} forced exit(s) this sweep", len(exits))
            return exits

    def _check_symbol(self, portfolio_id: str, symbol: str) -> ForcedExit | None:
        try:
            snapshot = self.provider.get_snapshot(symbol)
        except ProviderUnavailableError as exc:
            logger.warning("Monitor: no price for {}; skipped this sweep: {}", symbol, exc)
            return None

        # decide on the holding as it is now, not as the sweep first saw it
        with self.engine.guard(portfolio_id):
            portfolio = self.portfolio_loader()
            holding = portfolio.holdings.get(symbol)
            if holding is None:
                return None
            return self._check_holding(portfolio, holding, snapshot)

    def _check_holding(self, portfolio: Portfolio, holding: Holding, snapshot: MarketSnapshot) -> ForcedExit | None:
        price = to_decimal(snapshot.price)

        if holding.stop_loss is not None and price <= holding.stop_loss:
            return self._exit(portfolio, holding, snapshot, "stop_loss", holding.quantity, partial=False)

        if holding.take_profit is not None and price >= holding.take_profit:
            if self.take_profit_strategy == "partial" and not holding.trailing:
                quantity = (holding.quantity * self.partial_fraction).quantize(MONEY_QUANT)
                if 0 < quantity < holding.quantity:
                    forced = self._exit(portfolio, holding, snapshot, "take_profit", quantity, partial=True)
                    if forced.executed:
                        self.engine.update_protection(
                            portfolio.portfolio_id,
                            holding.symbol,
                            stop_loss=holding.average_price,
                            take_profit=holding.take_profit_2,
                            take_profit_2=None,
                            trailing=True,
                        )
                    return forced
            return self._exit(portfolio, holding, snapshot, "take_profit", holding.quantity, partial=False)

        if holding.trailing:
            self._ratchet(portfolio, holding, price)
        return None

    def _ratchet(self, portfolio: Portfolio, holding: Holding, price: Decimal) -> None:
        candidate = (price * (1 - self.trailing_pct)).quantize(MONEY_QUANT)
        if holding.stop_loss is not None and candidate <= holding.stop_loss:
            return
        self.engine.update_protection(portfolio.portfolio_id, holding.symbol, stop_loss=candidate)

    def _exit(
        self,
        portfolio: Portfolio,
        holding: Holding,
        snapshot: MarketSnapshot,
        reason: ExitReason,
        quantity: Decimal,
        partial: bool,
    ) -> ForcedExit:
        price = to_decimal(snapshot.price)
        forced = ForcedExit(symbol=holding.symbol, reason=reason, quantity=quantity, price=price, partial=partial)
        proposal = TradeProposal(
            symbol=holding.symbol,
            side="SELL",
            quantity=quantity,
            price=price,
            volume_24h=snapshot.volume_24h,
        )
        check = self.gate.validate(proposal, portfolio, "automated")
        if not check.allowed:
            forced.blocked_reason = check.reason
            logger.warning("Monitor: {} exit for {} blocked: {}", reason, holding.symbol, check.reason)
            return forced

        level = holding.stop_loss if reason == "stop_loss" else holding.take_profit
        order = TradeOrder(
            portfolio_id=portfolio.portfolio_id,
            symbol=holding.symbol,
            side="SELL",
            quantity=quantity,
            price=price,
            execution_method="scheduled",
            initiated_by=f"{reason}@{level}",
            reasoning=f"{'Partial ' if partial else ''}{reason.replace('_', ' ')} at {price} (level {level})",
        )
        try:
            forced.trade = self.engine.execute(order)
        except ExecutionError as exc:
            forced.blocked_reason = str(exc)
            logger.error("Monitor: {} exit for {} failed: {}", reason, holding.symbol, exc)
            return forced

        if self.recorder is not None:
            self.recorder.record(
                reason,
                f"{reason.replace('_', ' ').title()} exit {holding.symbol}: sold {quantity} @ {price}",
                {
                    "symbol": holding.symbol,
                    "quantity": str(quantity),
                    "price": str(price),
                    "level": str(level),
                    "partial": partial,
                    "realized_pnl": str(forced.trade.realized_pnl),
                },
            )
        return forced
