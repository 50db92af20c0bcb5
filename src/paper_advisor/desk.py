from __future__ import annotations

from decimal import Decimal
from typing import Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field, PositiveFloat

from .errors import ExecutionError, ProviderUnavailableError
from .execution import ExecutionEngine
from .market_data import MarketSnapshotProvider
from .models import Portfolio, RiskCheckResult, Trade, TradeOrder, TradeProposal, to_decimal
from .risk import RiskGate


class ManualTradeRequest(BaseModel):
    symbol: str = Field(min_length=1, max_length=20)
    side: Literal["BUY", "SELL"]
    quantity: PositiveFloat
    price: PositiveFloat | None = None
    stop_loss: PositiveFloat | None = None
    take_profit: PositiveFloat | None = None
    reasoning: str = ""
    initiated_by: str = "user"


class ManualTradeResponse(BaseModel):
    status: Literal["rejected", "needs_confirmation", "executed"]
    reason: str
    warnings: list[str] = Field(default_factory=list)
    trade: dict | None = None


def trade_to_dict(trade: Trade) -> dict:
    return {
        "id": trade.id,
        "portfolio_id": trade.portfolio_id,
        "symbol": trade.symbol,
        "side": trade.side,
        "quantity": float(trade.quantity),
        "price": float(trade.price),
        "fee": float(trade.fee),
        "slippage": float(trade.slippage),
        "total_cost": float(trade.total_cost),
        "realized_pnl": float(trade.realized_pnl) if trade.realized_pnl is not None else None,
        "execution_method": trade.execution_method,
        "initiated_by": trade.initiated_by,
        "recommendation_id": trade.recommendation_id,
        "executed_at": trade.executed_at.isoformat(),
    }


class TradingDesk:
    """Two-phase manual trading.

    The first call validates in manual mode and, if only warnings came up,
    returns them without touching the portfolio. Resubmitting with
    ``confirm_warnings=True`` executes. Sells never wait for confirmation.
    """

    def __init__(
        self,
        gate: RiskGate,
        engine: ExecutionEngine,
        provider: MarketSnapshotProvider,
        portfolio_loader: Callable[[], Portfolio],
    ) -> None:
        self.gate = gate
        self.engine = engine
        self.provider = provider
        self.portfolio_loader = portfolio_loader

    def submit_manual_trade(self, request: ManualTradeRequest, confirm_warnings: bool = False) -> ManualTradeResponse:
        symbol = request.symbol.strip().upper()
        volume: float | None = None
        price = to_decimal(request.price) if request.price is not None else None
        try:
            snapshot = self.provider.get_snapshot(symbol)
            volume = snapshot.volume_24h
            if price is None:
                price = to_decimal(snapshot.price)
        except ProviderUnavailableError as exc:
            if price is None:
                return ManualTradeResponse(status="rejected", reason=f"no market price for {symbol}: {exc}")
            logger.warning("Manual trade for {}: market data unavailable, using requested price", symbol)

        quantity = to_decimal(request.quantity)
        stop = to_decimal(request.stop_loss) if request.stop_loss is not None else None
        take_profit = to_decimal(request.take_profit) if request.take_profit is not None else None
        marks: dict[str, Decimal] = {symbol: price}
        proposal = TradeProposal(
            symbol=symbol,
            side=request.side,
            quantity=quantity,
            price=price,
            volume_24h=volume,
            stop_loss=stop,
            take_profit=take_profit,
        )

        portfolio_id = self.portfolio_loader().portfolio_id
        check: RiskCheckResult | None = None
        try:
            with self.engine.guard(portfolio_id):
                check = self.gate.validate(proposal, self.portfolio_loader(), "manual", marks)
                if not check.allowed:
                    logger.info("Manual {} {} rejected: {}", request.side, symbol, check.reason)
                    return ManualTradeResponse(status="rejected", reason=check.reason)

                if check.warnings and request.side == "BUY" and not confirm_warnings:
                    return ManualTradeResponse(
                        status="needs_confirmation",
                        reason="trade has warnings; resubmit with confirm_warnings=true to execute",
                        warnings=check.warnings,
                    )

                order = TradeOrder(
                    portfolio_id=portfolio_id,
                    symbol=symbol,
                    side=request.side,
                    quantity=quantity,
                    price=price,
                    execution_method="manual",
                    initiated_by=request.initiated_by,
                    reasoning=request.reasoning or "manual trade",
                    stop_loss=stop,
                    take_profit=take_profit,
                )
                trade = self.engine.execute(order)
        except ExecutionError as exc:
            return ManualTradeResponse(status="rejected", reason=str(exc), warnings=check.warnings if check else [])

        return ManualTradeResponse(
            status="executed",
            reason="executed",
            warnings=check.warnings,
            trade=trade_to_dict(trade),
        )
