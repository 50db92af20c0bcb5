from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from pathlib import Path
from typing import Callable

from loguru import logger

from .db import active_recommendations, mark_recommendation_status
from .errors import ExecutionError, ProviderUnavailableError
from .execution import MONEY_QUANT, ExecutionEngine
from .market_data import MarketSnapshotProvider
from .models import Portfolio, Recommendation, TradeOrder, TradeProposal, to_decimal
from .resilience import SingleFlight
from .risk import RiskGate
from .settings import settings


# Rejections that clear by themselves; the recommendation stays pending.
TRANSIENT_CODES = {"cadence", "daily_loss_halted"}


@dataclass
class AutoExecutionReport:
    executed: list[int] = field(default_factory=list)
    rejected: dict[int, str] = field(default_factory=dict)
    deferred: dict[int, str] = field(default_factory=dict)
    failed: dict[int, str] = field(default_factory=dict)


def size_position(
    entry: Decimal,
    stop: Decimal,
    total_value: Decimal,
    risk_per_trade_pct: float,
    max_position_pct: float,
    confidence: float | None = None,
) -> Decimal:
    """Units to buy so a stop-out loses ``risk_per_trade_pct`` of the portfolio.

    Capped at the max position size; scaled by confidence when given.
    """
    if entry <= 0 or stop >= entry or total_value <= 0:
        return Decimal("0")
    risk_amount = total_value * to_decimal(risk_per_trade_pct)
    quantity = risk_amount / (entry - stop)
    cap = total_value * to_decimal(max_position_pct) / entry
    quantity = min(quantity, cap)
    if confidence is not None:
        quantity = quantity * to_decimal(max(0.0, min(100.0, confidence))) / Decimal("100")
    return quantity.quantize(MONEY_QUANT, rounding=ROUND_DOWN)


class AutoExecutor:
    def __init__(
        self,
        gate: RiskGate,
        engine: ExecutionEngine,
        provider: MarketSnapshotProvider,
        portfolio_loader: Callable[[], Portfolio],
        db_path: Path | None = None,
        min_confidence: float | None = None,
        sizing_strategy: str | None = None,
    ) -> None:
        self.gate = gate
        self.engine = engine
        self.provider = provider
        self.portfolio_loader = portfolio_loader
        self.db_path = db_path
        self.min_confidence = settings.auto_execute_min_confidence if min_confidence is None else min_confidence
        self.sizing_strategy = sizing_strategy or settings.position_sizing_strategy
        self.flight = SingleFlight("auto_execute")

    def run(self) -> AutoExecutionReport:
        with self.flight.hold():
            report = AutoExecutionReport()
            pending = active_recommendations(status="pending", min_confidence=self.min_confidence, db_path=self.db_path)
            if pending:
                portfolio_id = self.portfolio_loader().portfolio_id
                for rec in pending:
                    self._process(portfolio_id, rec, report)
                logger.info(
                    "Auto-execute: {} executed, {} rejected, {} deferred, {} failed",
                    len(report.executed),
                    len(report.rejected),
                    len(report.deferred),
                    len(report.failed),
                )
            return report

    def _process(self, portfolio_id: str, rec: Recommendation, report: AutoExecutionReport) -> None:
        assert rec.id is not None
        try:
            snapshot = self.provider.get_snapshot(rec.symbol)
        except ProviderUnavailableError as exc:
            report.deferred[rec.id] = str(exc)
            return

        price = to_decimal(snapshot.price)
        marks = {rec.symbol: price}

        # sizing and the risk check must see the portfolio execute will change
        with self.engine.guard(portfolio_id):
            portfolio = self.portfolio_loader()
            if rec.action == "BUY":
                stop = to_decimal(rec.stop_loss) if rec.stop_loss is not None else None
                quantity = Decimal("0")
                if stop is not None:
                    quantity = size_position(
                        price,
                        stop,
                        portfolio.total_value(marks),
                        self.gate.policy.risk_per_trade_pct,
                        self.gate.policy.max_position_pct,
                        rec.confidence if self.sizing_strategy == "confidence" else None,
                    )
                levels = [to_decimal(level) for level in rec.take_profit_levels]
                take_profit = levels[0] if levels else None
                take_profit_2 = levels[1] if len(levels) > 1 else None
            else:
                holding = portfolio.holdings.get(rec.symbol)
                quantity = holding.quantity if holding else Decimal("0")
                stop = take_profit = take_profit_2 = None

            if quantity <= 0:
                self._reject(rec, report, "nothing to trade (no size or no holding)")
                return

            proposal = TradeProposal(
                symbol=rec.symbol,
                side=rec.action,
                quantity=quantity,
                price=price,
                volume_24h=snapshot.volume_24h,
                stop_loss=stop,
                take_profit=take_profit,
            )
            check = self.gate.validate(proposal, portfolio, "automated", marks)
            if not check.allowed:
                if check.code in TRANSIENT_CODES:
                    report.deferred[rec.id] = check.reason
                    logger.info("Auto-execute: #{} {} {} deferred: {}", rec.id, rec.action, rec.symbol, check.reason)
                else:
                    self._reject(rec, report, check.reason)
                return

            order = TradeOrder(
                portfolio_id=portfolio.portfolio_id,
                symbol=rec.symbol,
                side=rec.action,
                quantity=quantity,
                price=price,
                execution_method="auto",
                initiated_by=f"recommendation#{rec.id}",
                reasoning=str(rec.reasoning.get("conclusion") or rec.opportunity_reason),
                recommendation_id=rec.id,
                stop_loss=stop,
                take_profit=take_profit,
                take_profit_2=take_profit_2,
            )
            try:
                self.engine.execute(order)
            except ExecutionError as exc:
                report.failed[rec.id] = str(exc)
                mark_recommendation_status(rec.id, "failed", db_path=self.db_path)
                logger.error("Auto-execute: #{} {} {} failed: {}", rec.id, rec.action, rec.symbol, exc)
                return

        report.executed.append(rec.id)
        mark_recommendation_status(rec.id, "executed", db_path=self.db_path)

    def _reject(self, rec: Recommendation, report: AutoExecutionReport, reason: str) -> None:
        assert rec.id is not None
        report.rejected[rec.id] = reason
        mark_recommendation_status(rec.id, "rejected", db_path=self.db_path)
        logger.info("Auto-execute: #{} {} {} rejected: {}", rec.id, rec.action, rec.symbol, reason)
