from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable

from loguru import logger

from .db import active_recommendations, insert_recommendation
from .errors import PaperAdvisorError, VerdictError, VerdictTimeoutError
from .market_data import MarketSnapshotProvider
from .models import Candidate, MarketSnapshot, Opportunity, Portfolio, Recommendation, to_decimal, utc_now
from .news import NewsClient
from .opportunities import classify
from .resilience import SingleFlight
from .settings import settings
from .verdicts import BuyVerdict, ContextBundle, HoldVerdict, VerdictGenerator, parse_verdict


REJECTION_BUCKETS = ("hold", "low_confidence", "mismatch", "errors", "timeouts")


@dataclass
class RecommendationBatch:
    recommendations: list[Recommendation] = field(default_factory=list)
    total_opportunities: int = 0
    total_analyzed: int = 0
    ai_rejected: int = 0
    skipped: dict[str, int] = field(default_factory=lambda: {"entry": 0, "exit": 0})
    metadata: dict = field(default_factory=dict)


class RecommendationOrchestrator:
    """Turns classified opportunities into persisted, expiring recommendations.

    Only one run may be active at a time; a concurrent trigger raises
    StageBusyError instead of queueing.
    """

    def __init__(
        self,
        provider: MarketSnapshotProvider,
        generator: VerdictGenerator,
        candidate_source: Callable[[], list[Candidate]],
        portfolio_loader: Callable[[], Portfolio],
        news: NewsClient | None = None,
        db_path: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
        max_workers: int | None = None,
        verdict_timeout_seconds: float | None = None,
        min_confidence: float | None = None,
        ttl_hours: float | None = None,
    ) -> None:
        self.provider = provider
        self.generator = generator
        self.candidate_source = candidate_source
        self.portfolio_loader = portfolio_loader
        self.news = news
        self.db_path = db_path
        self._clock = clock
        self.max_workers = max_workers or settings.verdict_max_workers
        self.verdict_timeout_seconds = verdict_timeout_seconds or settings.verdict_timeout_seconds
        self.min_confidence = settings.min_verdict_confidence if min_confidence is None else min_confidence
        self.ttl = timedelta(hours=ttl_hours or settings.recommendation_ttl_hours)
        self.flight = SingleFlight("recommendations")

    def active(self, now: datetime | None = None) -> list[Recommendation]:
        return active_recommendations(now or self._clock(), db_path=self.db_path)

    def generate(self, max_entries: int | None = None, max_exits: int | None = None) -> RecommendationBatch:
        with self.flight.hold():
            return self._generate(
                settings.max_entry_recommendations if max_entries is None else max_entries,
                settings.max_exit_recommendations if max_exits is None else max_exits,
            )

    def _generate(self, max_entries: int, max_exits: int) -> RecommendationBatch:
        started = time.perf_counter()
        snapshots: dict[str, MarketSnapshot] = {}

        def price_lookup(symbol: str) -> Decimal:
            snapshot = self.provider.get_snapshot(symbol)
            snapshots[symbol] = snapshot
            return to_decimal(snapshot.price)

        candidates = self.candidate_source()
        portfolio = self.portfolio_loader()
        entries, exits = classify(candidates, portfolio, price_lookup)

        selected = entries[:max_entries] + exits[:max_exits]
        batch = RecommendationBatch(
            total_opportunities=len(entries) + len(exits),
            total_analyzed=len(selected),
            skipped={"entry": max(0, len(entries) - max_entries), "exit": max(0, len(exits) - max_exits)},
        )
        rejections = dict.fromkeys(REJECTION_BUCKETS, 0)

        if not selected:
            logger.info("Recommendations: no opportunities from {} candidates", len(candidates))
            batch.metadata = self._metadata(rejections, candidates, started)
            return batch

        macro = self.news.market_mood() if self.news is not None else {}
        bundles = [self._bundle(opp, snapshots.get(opp.symbol), macro) for opp in selected]

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="verdict")
        try:
            outcomes = self._gather(pool, bundles)
        finally:
            # a hung call must not hold the batch open
            pool.shutdown(wait=False, cancel_futures=True)

        for outcome in outcomes:
            if isinstance(outcome, Recommendation):
                batch.recommendations.append(outcome)
            else:
                rejections[outcome] += 1

        batch.ai_rejected = batch.total_analyzed - len(batch.recommendations)
        batch.metadata = self._metadata(rejections, candidates, started)
        logger.info(
            "Recommendations: {} opportunities, {} analyzed, {} accepted, {} rejected {}",
            batch.total_opportunities,
            batch.total_analyzed,
            len(batch.recommendations),
            batch.ai_rejected,
            rejections,
        )
        return batch

    def _metadata(self, rejections: dict[str, int], candidates: list[Candidate], started: float) -> dict:
        return {
            "candidates": len(candidates),
            "rejections": rejections,
            "min_confidence": self.min_confidence,
            "generated_at": self._clock().isoformat(),
            "duration_seconds": round(time.perf_counter() - started, 2),
        }

    def _bundle(self, opportunity: Opportunity, snapshot: MarketSnapshot | None, macro: dict) -> ContextBundle:
        if snapshot is None and opportunity.candidate is not None:
            snapshot = opportunity.candidate.snapshot

        indicators: dict = {}
        if snapshot is not None:
            indicators = {
                "price_change_24h": round(snapshot.price_change_24h, 2),
                "price_change_7d": round(snapshot.price_change_7d, 2),
                "volume_24h": round(snapshot.volume_24h, 2),
                "market_cap": round(snapshot.market_cap, 2),
                "volume_change_ratio": snapshot.volume_change_ratio,
            }
        if opportunity.candidate is not None:
            indicators.update(
                {
                    "volume_score": round(opportunity.candidate.volume_score, 1),
                    "momentum_score": round(opportunity.candidate.momentum_score, 1),
                    "composite_score": round(opportunity.candidate.composite_score, 1),
                }
            )

        headlines: list[str] = []
        sentiment = snapshot.sentiment_score if snapshot is not None else 50.0
        if self.news is not None:
            news = self.news.fetch_news_for_symbol(opportunity.symbol)
            headlines = [h.title for h in news.headlines]

        return ContextBundle(
            symbol=opportunity.symbol,
            current_price=float(opportunity.current_price or (snapshot.price if snapshot else 0.0)),
            opportunity=opportunity,
            indicators=indicators,
            headlines=headlines,
            sentiment_score=sentiment,
            macro=macro,
            holding=opportunity.holding,
        )

    def _gather(self, pool: ThreadPoolExecutor, bundles: list[ContextBundle]) -> list[Recommendation | str]:
        """Run one verdict call per bundle and return outcomes in bundle order.

        Each call gets ``verdict_timeout_seconds`` from the moment a worker
        picks it up. The whole batch is bounded by that timeout times the
        number of waves the pool needs, so queued calls get their turn but a
        pool stuck on hung calls cannot hold the run open forever.
        """
        timeout = self.verdict_timeout_seconds
        started_at: dict[int, float] = {}

        def call(index: int, bundle: ContextBundle) -> dict:
            started_at[index] = time.monotonic()
            return self.generator.generate_verdict(bundle)

        futures = {pool.submit(call, index, bundle): index for index, bundle in enumerate(bundles)}
        waves = -(-len(bundles) // self.max_workers)
        batch_deadline = time.monotonic() + timeout * waves
        outcomes: dict[int, Recommendation | str] = {}
        pending = set(futures)

        while pending:
            now = time.monotonic()
            for future in list(pending):
                index = futures[future]
                began = started_at.get(index)
                overdue = now >= batch_deadline or (began is not None and now - began >= timeout)
                if overdue and not future.done():
                    future.cancel()
                    pending.discard(future)
                    logger.warning("Verdict for {} timed out after {}s", bundles[index].symbol, timeout)
                    outcomes[index] = "timeouts"
            if not pending:
                break

            deadlines = [batch_deadline]
            deadlines += [started_at[futures[f]] + timeout for f in pending if futures[f] in started_at]
            done, pending = wait(pending, timeout=max(0.0, min(deadlines) - now), return_when=FIRST_COMPLETED)
            for future in done:
                index = futures[future]
                outcomes[index] = self._collect(bundles[index], future)

        return [outcomes[index] for index in range(len(bundles))]

    def _collect(self, bundle: ContextBundle, future: Future) -> Recommendation | str:
        symbol = bundle.symbol
        try:
            payload = future.result()
        except VerdictTimeoutError as exc:
            logger.warning("Verdict for {} timed out: {}", symbol, exc)
            return "timeouts"
        except PaperAdvisorError as exc:
            logger.warning("Verdict for {} failed: {}", symbol, exc)
            return "errors"
        except Exception as exc:
            logger.warning("Verdict generator raised for {}: {}", symbol, exc)
            return "errors"

        try:
            verdict = parse_verdict(payload)
        except VerdictError as exc:
            logger.warning("Verdict for {} rejected at validation: {}", symbol, exc)
            return "errors"

        if isinstance(verdict, HoldVerdict):
            return "hold"

        expected = "BUY" if bundle.opportunity.direction == "ENTRY" else "SELL"
        if verdict.action != expected:
            logger.info("Verdict for {} is {} on an {} opportunity; discarded", symbol, verdict.action, expected)
            return "mismatch"

        if verdict.confidence < self.min_confidence:
            return "low_confidence"

        return self._persist(bundle, verdict)

    def _persist(self, bundle: ContextBundle, verdict) -> Recommendation:
        now = self._clock()
        opportunity = bundle.opportunity
        entry_price = verdict.entry_price or bundle.current_price
        rec = Recommendation(
            symbol=bundle.symbol,
            action=verdict.action,
            confidence=verdict.confidence,
            entry_price=entry_price,
            stop_loss=verdict.stop_loss,
            take_profit_levels=list(verdict.take_profit_levels),
            position_size_fraction=verdict.position_size,
            risk_level=verdict.risk_level,
            reasoning=verdict.reasoning.model_dump(),
            sources=list(verdict.sources),
            direction=opportunity.direction,
            opportunity_reason=opportunity.reason,
            urgency=opportunity.urgency,
            created_at=now,
            expires_at=now + self.ttl,
        )
        rec.id = insert_recommendation(rec, db_path=self.db_path)
        logger.info(
            "Recommendation #{}: {} {} conf={:.0f} ({}, {}){}",
            rec.id,
            rec.action,
            rec.symbol,
            rec.confidence,
            rec.opportunity_reason,
            rec.urgency,
            f" stop={verdict.stop_loss}" if isinstance(verdict, BuyVerdict) else "",
        )
        return rec
