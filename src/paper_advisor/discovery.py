"""Discovery engine: reduces a market universe to a ranked candidate list.

Every asset must pass all hard filters of the active strategy profile:
 1. minimum market capitalization
 2. minimum 24h volume
 3. minimum volume-change ratio (skipped when the ratio is unknown)
 4. 7-day price change inside the profile's band

and then reach the profile's composite-score threshold. Scoring is a pure
function of the snapshot and the profile; fetching snapshots is the only
I/O and runs on a bounded thread pool.
"""

from __future__ import annotations

import math
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Sequence

from loguru import logger
from pydantic import BaseModel, model_validator
import yaml

from .errors import ProviderUnavailableError
from .market_data import MarketSnapshotProvider
from .models import Candidate, MarketSnapshot, utc_now
from .settings import settings


class StrategyProfile(BaseModel):
    name: str
    min_market_cap: float
    min_volume_24h: float
    min_volume_change: float | None
    price_change_7d_min: float
    price_change_7d_max: float
    volume_weight: float
    momentum_weight: float
    sentiment_weight: float
    threshold: float

    @model_validator(mode="after")
    def validate_weights(self) -> "StrategyProfile":
        total = self.volume_weight + self.momentum_weight + self.sentiment_weight
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"Profile '{self.name}' weights must sum to 1.0 (got {total:.4f})")
        if self.price_change_7d_min > self.price_change_7d_max:
            raise ValueError(f"Profile '{self.name}' has an empty 7d price-change band")
        return self


DEFAULT_PROFILES: dict[str, StrategyProfile] = {
    "conservative": StrategyProfile(
        name="conservative",
        min_market_cap=100_000_000,
        min_volume_24h=10_000_000,
        min_volume_change=1.1,
        price_change_7d_min=-15,
        price_change_7d_max=100,
        volume_weight=0.25,
        momentum_weight=0.35,
        sentiment_weight=0.40,
        threshold=70,
    ),
    "moderate": StrategyProfile(
        name="moderate",
        min_market_cap=50_000_000,
        min_volume_24h=2_000_000,
        min_volume_change=1.3,
        price_change_7d_min=-25,
        price_change_7d_max=200,
        volume_weight=0.30,
        momentum_weight=0.40,
        sentiment_weight=0.30,
        threshold=65,
    ),
    "aggressive": StrategyProfile(
        name="aggressive",
        min_market_cap=10_000_000,
        min_volume_24h=500_000,
        min_volume_change=1.5,
        price_change_7d_min=-30,
        price_change_7d_max=500,
        volume_weight=0.35,
        momentum_weight=0.45,
        sentiment_weight=0.20,
        threshold=60,
    ),
    "debug": StrategyProfile(
        name="debug",
        min_market_cap=1_000_000,
        min_volume_24h=100_000,
        min_volume_change=None,
        price_change_7d_min=-50,
        price_change_7d_max=1000,
        volume_weight=0.33,
        momentum_weight=0.33,
        sentiment_weight=0.34,
        threshold=40,
    ),
}


def load_profiles(file_path: Path | None = None) -> dict[str, StrategyProfile]:
    """Built-in profiles, with per-field overrides from the YAML file if present."""
    path = file_path or settings.discovery_profiles_path
    profiles = dict(DEFAULT_PROFILES)
    if not path.exists():
        return profiles

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    for name, overrides in (raw.get("profiles") or {}).items():
        base = profiles.get(name)
        merged = base.model_dump() if base else {}
        merged.update(overrides or {})
        merged["name"] = name
        profiles[name] = StrategyProfile.model_validate(merged)
    return profiles


# ── scoring ───────────────────────────────────────────────────────


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def normalize(value: float, band: float) -> float:
    """Map [-band, +band] linearly onto [0, 100], clamped."""
    return clamp((value + band) / (2 * band) * 100)


def volume_score(volume: float, min_volume: float) -> float:
    # saturates at 10x the floor
    if min_volume <= 0:
        return 100.0
    if volume <= 0:
        return 0.0
    return clamp(math.log10(volume / min_volume) / math.log10(10) * 100)


def momentum_score(change_24h: float, change_7d: float) -> float:
    return 0.4 * normalize(change_24h, 30) + 0.6 * normalize(change_7d, 50)


def composite_score(volume: float, momentum: float, sentiment: float, profile: StrategyProfile) -> float:
    return (
        profile.volume_weight * volume
        + profile.momentum_weight * momentum
        + profile.sentiment_weight * sentiment
    )


def filter_rejection(snapshot: MarketSnapshot, profile: StrategyProfile) -> str | None:
    """The first hard filter the snapshot fails, or None."""
    if snapshot.market_cap < profile.min_market_cap:
        return "market_cap"
    if snapshot.volume_24h < profile.min_volume_24h:
        return "volume"
    if (
        profile.min_volume_change is not None
        and snapshot.volume_change_ratio is not None
        and snapshot.volume_change_ratio < profile.min_volume_change
    ):
        return "volume_change"
    if not profile.price_change_7d_min <= snapshot.price_change_7d <= profile.price_change_7d_max:
        return "price_change_7d"
    return None


@dataclass
class AnalysisEntry:
    symbol: str
    passed: bool
    reason: str
    composite_score: float | None = None


@dataclass
class DiscoveryResult:
    profile: str
    candidates: list[Candidate] = field(default_factory=list)
    analysis_log: list[AnalysisEntry] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    provider_unavailable: bool = False
    discovered_at: datetime | None = None

    @property
    def rejection_summary(self) -> dict[str, int]:
        counts = Counter(entry.reason for entry in self.analysis_log if not entry.passed)
        return dict(counts.most_common())

    def summary(self) -> dict:
        return {
            "profile": self.profile,
            "analyzed": len(self.analysis_log),
            "passed": len(self.candidates),
            "dropped": len(self.dropped),
            "provider_unavailable": self.provider_unavailable,
            "top_rejections": dict(list(self.rejection_summary.items())[:3]),
        }


def score_snapshots(
    snapshots: Sequence[MarketSnapshot],
    profile: StrategyProfile,
    discovered_at: datetime,
) -> tuple[list[Candidate], list[AnalysisEntry]]:
    candidates: list[Candidate] = []
    log: list[AnalysisEntry] = []

    for snapshot in snapshots:
        rejected = filter_rejection(snapshot, profile)
        if rejected:
            log.append(AnalysisEntry(snapshot.symbol, False, rejected))
            continue

        vol = volume_score(snapshot.volume_24h, profile.min_volume_24h)
        mom = momentum_score(snapshot.price_change_24h, snapshot.price_change_7d)
        sent = clamp(snapshot.sentiment_score)
        composite = composite_score(vol, mom, sent, profile)
        if composite < profile.threshold:
            log.append(AnalysisEntry(snapshot.symbol, False, "below_threshold", round(composite, 2)))
            continue

        log.append(AnalysisEntry(snapshot.symbol, True, "passed", round(composite, 2)))
        candidates.append(
            Candidate(
                symbol=snapshot.symbol,
                snapshot=snapshot,
                volume_score=vol,
                momentum_score=mom,
                sentiment_score=sent,
                composite_score=composite,
                discovered_at=discovered_at,
            )
        )

    candidates.sort(key=lambda c: (-c.composite_score, -c.snapshot.volume_24h, c.symbol))
    return candidates, log


class DiscoveryEngine:
    def __init__(
        self,
        provider: MarketSnapshotProvider,
        profiles: dict[str, StrategyProfile] | None = None,
        max_workers: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.provider = provider
        self.profiles = profiles or load_profiles()
        self.max_workers = max_workers or settings.market_max_workers
        self._clock = clock

    def profile(self, name: str) -> StrategyProfile:
        if name not in self.profiles:
            raise ValueError(f"Unknown discovery profile '{name}'")
        return self.profiles[name]

    def _fetch(self, symbol: str) -> MarketSnapshot | None:
        try:
            return self.provider.get_snapshot(symbol)
        except ProviderUnavailableError as exc:
            logger.warning("Discovery: dropping {} for this run: {}", symbol, exc)
            return None

    def discover(self, universe: Sequence[str], profile: str) -> DiscoveryResult:
        active = self.profile(profile)
        discovered_at = self._clock()
        symbols = list(dict.fromkeys(universe))

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="discovery") as pool:
            fetched = list(pool.map(self._fetch, symbols))

        snapshots = [s for s in fetched if s is not None]
        dropped = [symbol for symbol, s in zip(symbols, fetched) if s is None]
        result = DiscoveryResult(profile=profile, dropped=dropped, discovered_at=discovered_at)

        if symbols and not snapshots:
            logger.error("Discovery: provider unavailable for all {} assets", len(symbols))
            result.provider_unavailable = True
            return result

        result.candidates, result.analysis_log = score_snapshots(snapshots, active, discovered_at)
        logger.info(
            "Discovery [{}]: {} scanned, {} dropped, {} candidates; top rejections {}",
            profile,
            len(symbols),
            len(dropped),
            len(result.candidates),
            result.summary()["top_rejections"],
        )
        return result
