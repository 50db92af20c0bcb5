from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal


Side = Literal["BUY", "SELL"]
Action = Literal["BUY", "SELL", "HOLD"]
Direction = Literal["ENTRY", "EXIT"]
Urgency = Literal["low", "medium", "high"]
OpportunityReason = Literal["breakout", "dip", "discovery", "profit_target", "risk_management", "resistance"]
ExecutionMethod = Literal["manual", "auto", "scheduled"]
RiskMode = Literal["automated", "manual"]

URGENCY_RANK: dict[str, int] = {"high": 3, "medium": 2, "low": 1}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    """Convert floats via their repr so 0.1 stays 0.1."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class Holding:
    symbol: str
    quantity: Decimal
    average_price: Decimal
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None
    take_profit_2: Decimal | None = None
    trailing: bool = False

    @property
    def cost_basis(self) -> Decimal:
        return self.quantity * self.average_price

    def percent_gain(self, price: Decimal) -> float:
        return float((price - self.average_price) / self.average_price * 100)


@dataclass
class Portfolio:
    portfolio_id: str
    cash: Decimal
    holdings: dict[str, Holding] = field(default_factory=dict)
    last_trade_at: datetime | None = None

    def holds(self, symbol: str) -> bool:
        return symbol in self.holdings

    @property
    def open_positions(self) -> int:
        return len(self.holdings)

    def total_value(self, marks: dict[str, Decimal] | None = None) -> Decimal:
        marks = marks or {}
        positions = sum(
            (h.quantity * marks.get(symbol, h.average_price) for symbol, h in self.holdings.items()),
            Decimal("0"),
        )
        return self.cash + positions


@dataclass
class MarketSnapshot:
    symbol: str
    price: float
    volume_24h: float
    price_change_24h: float
    price_change_7d: float
    sentiment_score: float
    market_cap: float = 0.0
    volume_change_ratio: float | None = None
    name: str = ""


@dataclass
class Candidate:
    symbol: str
    snapshot: MarketSnapshot
    volume_score: float
    momentum_score: float
    sentiment_score: float
    composite_score: float
    discovered_at: datetime


@dataclass
class Opportunity:
    symbol: str
    direction: Direction
    reason: OpportunityReason
    urgency: Urgency
    magnitude: float
    candidate: Candidate | None = None
    holding: Holding | None = None
    current_price: float | None = None
    percent_gain: float | None = None


@dataclass
class Recommendation:
    symbol: str
    action: Side
    confidence: float
    entry_price: float | None
    stop_loss: float | None
    take_profit_levels: list[float]
    position_size_fraction: float
    risk_level: str
    reasoning: dict[str, Any]
    sources: list[str]
    direction: Direction
    opportunity_reason: str
    urgency: str
    created_at: datetime
    expires_at: datetime
    execution_status: str = "pending"
    id: int | None = None

    def is_active(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) < self.expires_at


@dataclass(frozen=True)
class Trade:
    symbol: str
    side: Side
    quantity: Decimal
    price: Decimal
    fee: Decimal
    slippage: Decimal
    total_cost: Decimal
    reasoning: str
    execution_method: ExecutionMethod
    initiated_by: str
    executed_at: datetime
    portfolio_id: str = "default"
    recommendation_id: int | None = None
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None
    realized_pnl: Decimal | None = None
    id: int | None = None


@dataclass
class TradeOrder:
    """A trade that already passed the risk gate, ready for the engine."""

    portfolio_id: str
    symbol: str
    side: Side
    quantity: Decimal
    price: Decimal
    execution_method: ExecutionMethod
    initiated_by: str
    reasoning: str = ""
    recommendation_id: int | None = None
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None
    take_profit_2: Decimal | None = None


@dataclass
class TradeProposal:
    symbol: str
    side: Side
    quantity: Decimal
    price: Decimal
    volume_24h: float | None = None
    stop_loss: Decimal | None = None
    take_profit: Decimal | None = None


@dataclass
class RiskCheckResult:
    allowed: bool
    reason: str
    warnings: list[str] = field(default_factory=list)
    current_risk: float | None = None
    max_risk: float | None = None
    code: str = "ok"

    @property
    def needs_confirmation(self) -> bool:
        return self.allowed and bool(self.warnings)


@dataclass
class CircuitBreakerState:
    date_key: str
    start_of_day_value: Decimal
    realized_pnl: Decimal = Decimal("0")
    tripped: bool = False
    tripped_at: datetime | None = None

    @property
    def cumulative_loss_fraction(self) -> float:
        if self.start_of_day_value <= 0 or self.realized_pnl >= 0:
            return 0.0
        return float(-self.realized_pnl / self.start_of_day_value)
