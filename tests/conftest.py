from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

import pytest

from paper_advisor.db import initialize_database
from paper_advisor.discovery import DEFAULT_PROFILES
from paper_advisor.errors import ProviderUnavailableError
from paper_advisor.execution import ExecutionEngine
from paper_advisor.models import Candidate, MarketSnapshot, Portfolio
from paper_advisor.portfolio import open_portfolio
from paper_advisor.risk import DailyLossBreaker, RiskGate, RiskPolicy
from paper_advisor.service import AdvisorService


def make_snapshot(symbol: str, price: float = 100.0, **overrides: Any) -> MarketSnapshot:
    values = dict(
        symbol=symbol,
        price=price,
        volume_24h=20_000_000.0,
        price_change_24h=15.0,
        price_change_7d=25.0,
        sentiment_score=70.0,
        market_cap=1_000_000_000.0,
        volume_change_ratio=1.5,
        name=symbol.title(),
    )
    values.update(overrides)
    return MarketSnapshot(**values)


def make_candidate(
    symbol: str,
    volume: float = 50.0,
    momentum: float = 50.0,
    composite: float = 60.0,
    price: float = 100.0,
) -> Candidate:
    return Candidate(
        symbol=symbol,
        snapshot=make_snapshot(symbol, price=price),
        volume_score=volume,
        momentum_score=momentum,
        sentiment_score=50.0,
        composite_score=composite,
        discovered_at=datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc),
    )


class FakeProvider:
    def __init__(self, snapshots: dict[str, MarketSnapshot] | None = None) -> None:
        self.snapshots = dict(snapshots or {})
        self.unavailable: set[str] = set()
        self.calls: list[str] = []

    def add(self, symbol: str, price: float = 100.0, **overrides: Any) -> MarketSnapshot:
        snapshot = make_snapshot(symbol, price=price, **overrides)
        self.snapshots[symbol] = snapshot
        return snapshot

    def set_price(self, symbol: str, price: float) -> None:
        self.snapshots[symbol].price = price

    def get_snapshot(self, symbol: str) -> MarketSnapshot:
        self.calls.append(symbol)
        if symbol in self.unavailable or symbol not in self.snapshots:
            raise ProviderUnavailableError(f"no data for {symbol}", symbol=symbol)
        return self.snapshots[symbol]

    def list_universe(self, size: int) -> list[str]:
        return list(self.snapshots)[:size]


class FakeGenerator:
    """Returns canned payloads per symbol; a callable is invoked with the bundle."""

    def __init__(self, payloads: dict[str, Any] | None = None) -> None:
        self.payloads = dict(payloads or {})
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def generate_verdict(self, bundle) -> dict:
        with self._lock:
            self.calls.append(bundle.symbol)
        payload = self.payloads.get(bundle.symbol, {"action": "HOLD", "confidence": 50})
        if isinstance(payload, Exception):
            raise payload
        if callable(payload):
            return payload(bundle)
        return payload


def buy_payload(price: float = 100.0, confidence: float = 75.0) -> dict:
    return {
        "action": "BUY",
        "confidence": confidence,
        "reasoning": {"bullCase": "volume", "bearCase": "none", "conclusion": "buy"},
        "entryPrice": price,
        "stopLoss": price * 0.95,
        "takeProfitLevels": [price * 1.05, price * 1.10],
        "positionSize": 0.03,
        "riskLevel": "MEDIUM",
        "sources": ["technical"],
    }


def sell_payload(confidence: float = 75.0) -> dict:
    return {"action": "SELL", "confidence": confidence, "reasoning": {"conclusion": "take profit"}}


@pytest.fixture
def policy() -> RiskPolicy:
    return RiskPolicy(
        max_position_pct=0.05,
        manual_position_warn_pct=0.20,
        manual_position_alarm_pct=0.50,
        max_stop_loss_pct=0.10,
        max_open_positions=5,
        max_daily_loss_pct=0.03,
        min_trade_interval_minutes=60,
        min_volume_24h_usd=1_000_000,
        risk_per_trade_pct=0.02,
        fee_rate=0.001,
        max_slippage_rate=0.003,
    )


@pytest.fixture
def profiles():
    return dict(DEFAULT_PROFILES)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "advisor.sqlite3"
    initialize_database(path)
    return path


class Today:
    def __init__(self, value: date) -> None:
        self.value = value

    def __call__(self) -> date:
        return self.value


@pytest.fixture
def today() -> Today:
    return Today(date(2026, 1, 5))


@dataclass
class Stack:
    db_path: Path
    provider: FakeProvider
    breaker: DailyLossBreaker
    gate: RiskGate
    engine: ExecutionEngine
    today: Today

    def load(self) -> Portfolio:
        return open_portfolio("default", Decimal("10000"), db_path=self.db_path)


@pytest.fixture
def stack(db_path: Path, policy: RiskPolicy, today: Today) -> Stack:
    open_portfolio("default", Decimal("10000"), db_path=db_path)
    breaker = DailyLossBreaker(policy.max_daily_loss_pct, timezone="UTC", today=today)
    engine = ExecutionEngine(
        breaker,
        db_path=db_path,
        fee_rate=0.001,
        min_slippage_rate=0.001,
        max_slippage_rate=0.001,
    )
    return Stack(
        db_path=db_path,
        provider=FakeProvider(),
        breaker=breaker,
        gate=RiskGate(policy, breaker),
        engine=engine,
        today=today,
    )


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    moment = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
    return lambda: moment


class LowRng:
    def uniform(self, low: float, high: float) -> float:
        return low


@pytest.fixture
def service(db_path: Path, policy: RiskPolicy, profiles, today: Today):
    provider = FakeProvider()
    provider.add("AAA")
    provider.add("BTC")
    advisor = AdvisorService(
        provider=provider,
        generator=FakeGenerator({"AAA": buy_payload()}),
        policy=policy,
        profiles=profiles,
        db_path=db_path,
        rng=LowRng(),
        today=today,
    )
    yield advisor
    advisor.shutdown(timeout=1)
