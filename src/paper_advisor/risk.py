from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable
from zoneinfo import ZoneInfo

from loguru import logger
import yaml

from .models import CircuitBreakerState, Portfolio, RiskCheckResult, RiskMode, TradeProposal, to_decimal, utc_now
from .settings import settings


@dataclass
class RiskPolicy:
    max_position_pct: float
    manual_position_warn_pct: float
    manual_position_alarm_pct: float
    max_stop_loss_pct: float
    max_open_positions: int
    max_daily_loss_pct: float
    min_trade_interval_minutes: int
    min_volume_24h_usd: float
    risk_per_trade_pct: float
    fee_rate: float
    max_slippage_rate: float


def default_risk_policy() -> RiskPolicy:
    return RiskPolicy(
        max_position_pct=settings.max_position_pct,
        manual_position_warn_pct=settings.manual_position_warn_pct,
        manual_position_alarm_pct=settings.manual_position_alarm_pct,
        max_stop_loss_pct=settings.max_stop_loss_pct,
        max_open_positions=settings.max_open_positions,
        max_daily_loss_pct=settings.max_daily_loss_pct,
        min_trade_interval_minutes=settings.min_trade_interval_minutes,
        min_volume_24h_usd=settings.min_volume_24h_usd,
        risk_per_trade_pct=settings.risk_per_trade_pct,
        fee_rate=settings.fee_rate,
        max_slippage_rate=settings.max_slippage_rate,
    )


def load_risk_policy(file_path: Path = Path("config/risk_policy.yaml")) -> RiskPolicy:
    base = default_risk_policy()
    if not file_path.exists():
        return base

    raw = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    limits = raw.get("limits", {})
    manual = raw.get("manual", {})
    trade_guards = raw.get("trade_guards", {})

    return RiskPolicy(
        max_position_pct=float(limits.get("max_position_pct", base.max_position_pct)),
        manual_position_warn_pct=float(manual.get("position_warn_pct", base.manual_position_warn_pct)),
        manual_position_alarm_pct=float(manual.get("position_alarm_pct", base.manual_position_alarm_pct)),
        max_stop_loss_pct=float(limits.get("max_stop_loss_pct", base.max_stop_loss_pct)),
        max_open_positions=int(limits.get("max_open_positions", base.max_open_positions)),
        max_daily_loss_pct=float(limits.get("max_daily_loss_pct", base.max_daily_loss_pct)),
        min_trade_interval_minutes=int(trade_guards.get("min_trade_interval_minutes", base.min_trade_interval_minutes)),
        min_volume_24h_usd=float(trade_guards.get("min_volume_24h_usd", base.min_volume_24h_usd)),
        risk_per_trade_pct=float(limits.get("risk_per_trade_pct", base.risk_per_trade_pct)),
        fee_rate=base.fee_rate,
        max_slippage_rate=base.max_slippage_rate,
    )


class DailyLossBreaker:
    """Trading circuit breaker, one date-scoped state per portfolio.

    The day's state is created at the first touch on a new date, which is
    also when a tripped breaker from the previous day is cleared. Realized
    P&L is netted: gains earlier in the day offset later losses.
    """

    def __init__(
        self,
        max_daily_loss_pct: float,
        timezone: str | None = None,
        today: Callable[[], date] | None = None,
        ledger_lookup: Callable[[str, datetime], Decimal] | None = None,
        on_trip: Callable[[str, CircuitBreakerState], None] | None = None,
    ) -> None:
        self.max_daily_loss_pct = max_daily_loss_pct
        self._tz = ZoneInfo(timezone or settings.timezone)
        self._today = today or (lambda: datetime.now(self._tz).date())
        self._ledger_lookup = ledger_lookup
        self._on_trip = on_trip
        self._lock = threading.Lock()
        self._states: dict[str, CircuitBreakerState] = {}

    def _state_for(self, portfolio_id: str, portfolio_value: Decimal) -> CircuitBreakerState:
        day = self._today()
        key = day.isoformat()
        state = self._states.get(portfolio_id)
        if state is not None and state.date_key == key:
            return state

        if state is not None:
            logger.info("Daily-loss breaker for {} reset for {}", portfolio_id, key)

        realized = Decimal("0")
        if self._ledger_lookup is not None:
            start = datetime(day.year, day.month, day.day, tzinfo=self._tz)
            realized = self._ledger_lookup(portfolio_id, start)

        state = CircuitBreakerState(
            date_key=key,
            start_of_day_value=portfolio_value - realized,
            realized_pnl=realized,
        )
        self._evaluate(state)
        self._states[portfolio_id] = state
        return state

    def _evaluate(self, state: CircuitBreakerState) -> bool:
        if state.tripped:
            return False
        if state.cumulative_loss_fraction >= self.max_daily_loss_pct:
            state.tripped = True
            state.tripped_at = utc_now()
            return True
        return False

    def snapshot(self, portfolio_id: str, portfolio_value: Decimal) -> CircuitBreakerState:
        with self._lock:
            state = self._state_for(portfolio_id, portfolio_value)
            return CircuitBreakerState(
                date_key=state.date_key,
                start_of_day_value=state.start_of_day_value,
                realized_pnl=state.realized_pnl,
                tripped=state.tripped,
                tripped_at=state.tripped_at,
            )

    def is_tripped(self, portfolio_id: str, portfolio_value: Decimal) -> bool:
        return self.snapshot(portfolio_id, portfolio_value).tripped

    def record_realized_pnl(self, portfolio_id: str, pnl: Decimal, portfolio_value_before: Decimal) -> bool:
        """Add one closeout's realized P&L; returns True when this call trips the breaker."""
        with self._lock:
            state = self._state_for(portfolio_id, portfolio_value_before)
            state.realized_pnl += pnl
            tripped_now = self._evaluate(state)

        if tripped_now:
            logger.warning(
                "Daily-loss breaker tripped for {}: loss {:.2%} of start-of-day value {}",
                portfolio_id,
                state.cumulative_loss_fraction,
                state.start_of_day_value,
            )
            if self._on_trip is not None:
                self._on_trip(portfolio_id, state)
        return tripped_now


class RiskGate:
    """Single chokepoint every trade passes before reaching the execution engine.

    Automated mode returns at the first failing rule. Manual mode blocks only
    on liquidity and funds/quantity; everything else becomes a warning the
    caller must confirm.
    """

    def __init__(
        self,
        policy: RiskPolicy,
        breaker: DailyLossBreaker,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.policy = policy
        self.breaker = breaker
        self._clock = clock

    def validate(
        self,
        proposal: TradeProposal,
        portfolio: Portfolio,
        mode: RiskMode,
        marks: dict[str, Decimal] | None = None,
    ) -> RiskCheckResult:
        automated = mode == "automated"
        warnings: list[str] = []

        if proposal.quantity <= 0 or proposal.price <= 0:
            return self._reject("quantity and price must be positive", "invalid_order")

        # Liquidity floor applies to every trade in both modes.
        floor = self.policy.min_volume_24h_usd
        if proposal.volume_24h is None:
            if automated:
                return self._reject("24h volume unknown; liquidity floor cannot be verified", "liquidity")
            warnings.append("24h volume unknown; liquidity not verified")
        elif proposal.volume_24h < floor:
            return self._reject(
                f"24h volume ${proposal.volume_24h:,.0f} below liquidity floor ${floor:,.0f}",
                "liquidity",
                current_risk=proposal.volume_24h,
                max_risk=floor,
            )

        if proposal.side == "SELL":
            holding = portfolio.holdings.get(proposal.symbol)
            held = holding.quantity if holding else Decimal("0")
            if held < proposal.quantity:
                return self._reject(
                    f"insufficient quantity: holding {held} {proposal.symbol}, requested {proposal.quantity}",
                    "insufficient_quantity",
                )
            return self._approve(warnings)

        notional = proposal.quantity * proposal.price
        estimated_cost = notional * (1 + to_decimal(self.policy.fee_rate) + to_decimal(self.policy.max_slippage_rate))
        if estimated_cost > portfolio.cash:
            return self._reject(
                f"insufficient funds: estimated cost ${estimated_cost:.2f} exceeds cash ${portfolio.cash:.2f}",
                "insufficient_funds",
            )

        total_value = portfolio.total_value(marks)
        existing = portfolio.holdings.get(proposal.symbol)
        existing_value = Decimal("0")
        if existing is not None:
            mark = (marks or {}).get(proposal.symbol, existing.average_price)
            existing_value = existing.quantity * mark
        position_fraction = float((existing_value + notional) / total_value) if total_value > 0 else 1.0

        checks = [
            self._check_breaker(portfolio, total_value, automated),
            self._check_cadence(portfolio) if automated else None,
            self._check_position_size(position_fraction, automated),
            self._check_stop_presence(proposal),
            self._check_stop_width(proposal),
            self._check_open_positions(proposal, portfolio),
        ]
        for check in checks:
            if check is None:
                continue
            if automated:
                return check
            warnings.append(check.reason)

        result = self._approve(warnings)
        result.current_risk = position_fraction
        result.max_risk = self.policy.max_position_pct if automated else self.policy.manual_position_warn_pct
        return result

    # ── rules ─────────────────────────────────────────────────────

    def _check_breaker(self, portfolio: Portfolio, total_value: Decimal, automated: bool) -> RiskCheckResult | None:
        state = self.breaker.snapshot(portfolio.portfolio_id, total_value)
        if not state.tripped:
            return None
        if automated:
            reason = f"daily loss limit reached ({state.cumulative_loss_fraction:.1%}); automated entries halted until next day"
        else:
            reason = f"daily loss limit reached ({state.cumulative_loss_fraction:.1%}); trading is halted for automation today"
        return self._reject(
            reason,
            "daily_loss_halted",
            current_risk=state.cumulative_loss_fraction,
            max_risk=self.policy.max_daily_loss_pct,
        )

    def _check_cadence(self, portfolio: Portfolio) -> RiskCheckResult | None:
        if portfolio.last_trade_at is None or self.policy.min_trade_interval_minutes <= 0:
            return None
        elapsed = (self._clock() - portfolio.last_trade_at).total_seconds() / 60
        if elapsed >= self.policy.min_trade_interval_minutes:
            return None
        return self._reject(
            f"trade cadence: last trade {elapsed:.0f} min ago, minimum interval is "
            f"{self.policy.min_trade_interval_minutes} min",
            "cadence",
            current_risk=elapsed,
            max_risk=float(self.policy.min_trade_interval_minutes),
        )

    def _check_position_size(self, fraction: float, automated: bool) -> RiskCheckResult | None:
        if automated:
            if fraction > self.policy.max_position_pct:
                return self._reject(
                    f"position size exceeds limit ({fraction:.1%} > {self.policy.max_position_pct:.1%})",
                    "position_size",
                    current_risk=fraction,
                    max_risk=self.policy.max_position_pct,
                )
            return None

        if fraction > self.policy.manual_position_alarm_pct:
            reason = (
                f"position size {fraction:.1%} is more than {self.policy.manual_position_alarm_pct:.0%} "
                "of the portfolio; this concentrates most of your capital in one asset"
            )
        elif fraction > self.policy.manual_position_warn_pct:
            reason = f"position size {fraction:.1%} exceeds {self.policy.manual_position_warn_pct:.0%} of portfolio"
        else:
            return None
        return self._reject(reason, "position_size", current_risk=fraction, max_risk=self.policy.manual_position_warn_pct)

    def _check_stop_presence(self, proposal: TradeProposal) -> RiskCheckResult | None:
        if proposal.stop_loss is not None:
            return None
        return self._reject("no stop-loss set", "missing_stop_loss")

    def _check_stop_width(self, proposal: TradeProposal) -> RiskCheckResult | None:
        if proposal.stop_loss is None:
            return None
        if proposal.stop_loss >= proposal.price or proposal.stop_loss <= 0:
            return self._reject(
                f"stop-loss {proposal.stop_loss} must be positive and below entry {proposal.price}",
                "stop_loss_width",
            )
        width = float((proposal.price - proposal.stop_loss) / proposal.price)
        if width > self.policy.max_stop_loss_pct:
            return self._reject(
                f"stop-loss {width:.1%} below entry exceeds {self.policy.max_stop_loss_pct:.1%} limit",
                "stop_loss_width",
                current_risk=width,
                max_risk=self.policy.max_stop_loss_pct,
            )
        return None

    def _check_open_positions(self, proposal: TradeProposal, portfolio: Portfolio) -> RiskCheckResult | None:
        if portfolio.holds(proposal.symbol):
            return None
        if portfolio.open_positions < self.policy.max_open_positions:
            return None
        return self._reject(
            f"max open positions reached ({portfolio.open_positions}/{self.policy.max_open_positions})",
            "open_positions",
            current_risk=float(portfolio.open_positions),
            max_risk=float(self.policy.max_open_positions),
        )

    @staticmethod
    def _reject(
        reason: str,
        code: str,
        current_risk: float | None = None,
        max_risk: float | None = None,
    ) -> RiskCheckResult:
        return RiskCheckResult(allowed=False, reason=reason, current_risk=current_risk, max_risk=max_risk, code=code)

    @staticmethod
    def _approve(warnings: list[str]) -> RiskCheckResult:
        if warnings:
            return RiskCheckResult(allowed=True, reason="approved with warnings", warnings=warnings, code="warnings")
        return RiskCheckResult(allowed=True, reason="approved")

    # ── reporting ─────────────────────────────────────────────────

    def exposure(self, portfolio: Portfolio, marks: dict[str, Decimal] | None = None) -> dict:
        marks = marks or {}
        total_value = portfolio.total_value(marks)
        invested = total_value - portfolio.cash
        state = self.breaker.snapshot(portfolio.portfolio_id, total_value)
        positions = {
            symbol: round(float(h.quantity * marks.get(symbol, h.average_price) / total_value), 4)
            if total_value > 0
            else 0.0
            for symbol, h in portfolio.holdings.items()
        }
        return {
            "portfolio_id": portfolio.portfolio_id,
            "total_value": float(total_value),
            "cash": float(portfolio.cash),
            "invested": float(invested),
            "utilisation": round(float(invested / total_value), 4) if total_value > 0 else 0.0,
            "open_positions": portfolio.open_positions,
            "max_open_positions": self.policy.max_open_positions,
            "position_fractions": positions,
            "max_position_pct": self.policy.max_position_pct,
            "daily_loss_fraction": round(state.cumulative_loss_fraction, 4),
            "max_daily_loss_pct": self.policy.max_daily_loss_pct,
            "breaker_tripped": state.tripped,
            "breaker_date": state.date_key,
        }
