from __future__ import annotations

import random
from dataclasses import asdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable

from loguru import logger

from .alerts import EventRecorder
from .auto_executor import AutoExecutor
from .db import initialize_database, latest_candidates, realized_pnl_since, store_candidates
from .desk import TradingDesk
from .discovery import DiscoveryEngine, DiscoveryResult, StrategyProfile
from .errors import ProviderUnavailableError, StageBusyError
from .execution import ExecutionEngine
from .market_data import CoinGeckoProvider, MarketSnapshotProvider
from .models import Candidate, CircuitBreakerState, Portfolio, utc_now
from .monitor import PositionMonitor
from .news import NewsClient
from .portfolio import collect_marks, open_portfolio
from .recommendations import RecommendationOrchestrator
from .resilience import CircuitBreaker, SingleFlight
from .risk import DailyLossBreaker, RiskGate, RiskPolicy, load_risk_policy
from .settings import settings
from .state import RuntimeState
from .verdicts import VerdictGenerator, default_verdict_generator


STAGES = ("discovery", "recommendations", "monitor", "auto_execute")


class AdvisorService:
    """Builds every engine once and runs the named stages.

    The scheduler, the CLI and the HTTP API all trigger stages through
    ``run_stage`` so timer runs and run-now requests share one single-flight
    guard per stage.
    """

    def __init__(
        self,
        provider: MarketSnapshotProvider | None = None,
        generator: VerdictGenerator | None = None,
        news: NewsClient | None = None,
        policy: RiskPolicy | None = None,
        profiles: dict[str, StrategyProfile] | None = None,
        db_path: Path | None = None,
        portfolio_id: str | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
        today: Callable[[], date] | None = None,
    ) -> None:
        self.db_path = db_path
        self.portfolio_id = portfolio_id or settings.portfolio_id
        self._clock = clock
        initialize_database(db_path)
        open_portfolio(self.portfolio_id, db_path=db_path)

        self.recorder = EventRecorder(db_path=db_path)
        self.state = RuntimeState()
        self.policy = policy or load_risk_policy()

        if provider is None:
            news = news or NewsClient()
            provider = CoinGeckoProvider(news=news, breaker=CircuitBreaker("coingecko", on_open=self._circuit_opened))
        self.provider = provider
        self.news = news
        self.generator = generator or default_verdict_generator(on_circuit_open=self._circuit_opened)

        self.breaker = DailyLossBreaker(
            self.policy.max_daily_loss_pct,
            today=today,
            ledger_lookup=lambda pid, since: realized_pnl_since(pid, since, db_path=db_path),
            on_trip=self._daily_loss_tripped,
        )
        self.gate = RiskGate(self.policy, self.breaker, clock=clock)
        self.engine = ExecutionEngine(self.breaker, db_path=db_path, rng=rng, clock=clock)
        self.discovery = DiscoveryEngine(self.provider, profiles=profiles, clock=clock)
        self.orchestrator = RecommendationOrchestrator(
            self.provider,
            self.generator,
            candidate_source=self.current_candidates,
            portfolio_loader=self.load_portfolio,
            news=self.news,
            db_path=db_path,
            clock=clock,
        )
        self.monitor = PositionMonitor(self.provider, self.gate, self.engine, self.load_portfolio, self.recorder)
        self.auto_executor = AutoExecutor(self.gate, self.engine, self.provider, self.load_portfolio, db_path=db_path)
        self.desk = TradingDesk(self.gate, self.engine, self.provider, self.load_portfolio)

        self.latest_discovery: DiscoveryResult | None = None
        self._discovery_flight = SingleFlight("discovery")
        self.flights: dict[str, SingleFlight] = {
            "discovery": self._discovery_flight,
            "recommendations": self.orchestrator.flight,
            "monitor": self.monitor.flight,
            "auto_execute": self.auto_executor.flight,
        }

    # ── callbacks ─────────────────────────────────────────────────

    def _circuit_opened(self, name: str) -> None:
        self.recorder.record("circuit_open", f"Circuit '{name}' opened", {"dependency": name})

    def _daily_loss_tripped(self, portfolio_id: str, state: CircuitBreakerState) -> None:
        self.recorder.record(
            "daily_loss_halt",
            f"Daily loss limit reached for {portfolio_id}; automated entries halted until {state.date_key} ends",
            {
                "portfolio_id": portfolio_id,
                "date": state.date_key,
                "loss_fraction": round(state.cumulative_loss_fraction, 4),
                "start_of_day_value": str(state.start_of_day_value),
            },
        )

    # ── shared state ──────────────────────────────────────────────

    def load_portfolio(self) -> Portfolio:
        return open_portfolio(self.portfolio_id, db_path=self.db_path)

    def current_candidates(self) -> list[Candidate]:
        if self.latest_discovery is not None and self.latest_discovery.candidates:
            return self.latest_discovery.candidates
        since = self._clock() - timedelta(minutes=2 * settings.discovery_interval_minutes)
        return latest_candidates(since, limit=settings.discovery_store_top_n, db_path=self.db_path)

    # ── stages ────────────────────────────────────────────────────

    def run_discovery(self) -> dict:
        with self._discovery_flight.hold():
            profile = settings.discovery_profile
            try:
                universe = self.provider.list_universe(settings.discovery_universe_size)
            except ProviderUnavailableError as exc:
                logger.error("Discovery: universe unavailable: {}", exc)
                result = DiscoveryResult(profile=profile, provider_unavailable=True, discovered_at=self._clock())
            else:
                result = self.discovery.discover(universe, profile)

            if not result.provider_unavailable:
                self.latest_discovery = result
                store_candidates(result.candidates[: settings.discovery_store_top_n], profile, db_path=self.db_path)
            return {
                **result.summary(),
                "top": [
                    {"symbol": c.symbol, "composite_score": round(c.composite_score, 2)}
                    for c in result.candidates[: settings.discovery_store_top_n]
                ],
            }

    def run_recommendations(self) -> dict:
        batch = self.orchestrator.generate()
        return {
            "accepted": [
                {"id": r.id, "symbol": r.symbol, "action": r.action, "confidence": r.confidence}
                for r in batch.recommendations
            ],
            "total_opportunities": batch.total_opportunities,
            "total_analyzed": batch.total_analyzed,
            "ai_rejected": batch.ai_rejected,
            "skipped": batch.skipped,
            "metadata": batch.metadata,
        }

    def run_monitor(self) -> dict:
        exits = self.monitor.sweep()
        return {
            "forced_exits": [
                {
                    "symbol": e.symbol,
                    "reason": e.reason,
                    "quantity": str(e.quantity),
                    "price": str(e.price),
                    "partial": e.partial,
                    "executed": e.executed,
                    "blocked_reason": e.blocked_reason,
                }
                for e in exits
            ]
        }

    def run_auto_execute(self) -> dict:
        if not settings.auto_execute_enabled:
            return {"enabled": False}
        report = self.auto_executor.run()
        return {"enabled": True, **asdict(report)}

    def run_stage(self, name: str) -> dict:
        runners: dict[str, Callable[[], dict]] = {
            "discovery": self.run_discovery,
            "recommendations": self.run_recommendations,
            "monitor": self.run_monitor,
            "auto_execute": self.run_auto_execute,
        }
        if name not in runners:
            raise ValueError(f"Unknown stage '{name}'; expected one of {', '.join(STAGES)}")

        started = self._clock()
        try:
            summary = runners[name]()
        except StageBusyError:
            self.state.mark_skipped(name)
            raise
        except Exception as exc:
            self.state.mark_failure(name, started, str(exc))
            self.recorder.record("stage_failed", f"Stage '{name}' failed: {exc}", {"stage": name})
            raise
        self.state.mark_success(name, started, summary)
        return summary

    # ── reporting ─────────────────────────────────────────────────

    def marks(self, portfolio: Portfolio) -> dict[str, Decimal]:
        return collect_marks(portfolio, self.provider)

    def status(self) -> dict:
        portfolio = self.load_portfolio()
        circuits = {}
        for dependency in (self.provider, self.generator):
            breaker = getattr(dependency, "breaker", None)
            if isinstance(breaker, CircuitBreaker):
                circuits[breaker.name] = breaker.state
        return {
            "portfolio_id": self.portfolio_id,
            "auto_execute_enabled": settings.auto_execute_enabled,
            "discovery_profile": settings.discovery_profile,
            "exposure": self.gate.exposure(portfolio, self.marks(portfolio)),
            "circuits": circuits,
            "busy_stages": [name for name, flight in self.flights.items() if flight.busy],
            "inflight_executions": self.engine.inflight,
            "runtime": self.state.snapshot(),
        }

    def shutdown(self, timeout: float | None = None) -> bool:
        return self.engine.shutdown(settings.shutdown_timeout_seconds if timeout is None else timeout)
