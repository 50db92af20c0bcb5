from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Protocol

from loguru import logger
import requests

from .errors import CircuitOpenError, ProviderUnavailableError
from .models import MarketSnapshot
from .news import NewsClient
from .resilience import CircuitBreaker, retry_with_backoff
from .settings import settings


class MarketSnapshotProvider(Protocol):
    def get_snapshot(self, symbol: str) -> MarketSnapshot:
        """Latest features for one symbol; raises ProviderUnavailableError."""

    def list_universe(self, size: int) -> list[str]:
        """Top ``size`` symbols by market capitalization."""


ROW_TTL_SECONDS = 60.0
# at most one stored volume sample per symbol per interval
VOLUME_SAMPLE_SECONDS = 600.0


class CoinGeckoProvider:
    """Snapshots from CoinGecko ``/coins/markets`` plus news sentiment.

    ``volume_change_ratio`` compares a symbol's current 24h volume with the
    24h volume observed at least ``volume_baseline_hours`` earlier. It stays
    None until the provider has watched the symbol for that long.
    """

    def __init__(
        self,
        news: NewsClient | None = None,
        session: requests.Session | None = None,
        base_url: str | None = None,
        breaker: CircuitBreaker | None = None,
        baseline_hours: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = (base_url or settings.coingecko_base_url).rstrip("/")
        self.timeout = settings.market_request_timeout_seconds
        self.news = news
        self._session = session or requests.Session()
        if settings.coingecko_api_key:
            self._session.headers.update({"x-cg-demo-api-key": settings.coingecko_api_key})
        self._breaker = breaker or CircuitBreaker("coingecko")
        self._lock = threading.Lock()
        self._rows: dict[str, tuple[float, dict]] = {}
        self._ids: dict[str, str] = {}
        self._clock = clock
        self._baseline_seconds = (baseline_hours or settings.volume_baseline_hours) * 3600
        self._volume_samples: dict[str, deque[tuple[float, float]]] = {}
        self._volume_ratio: dict[str, float] = {}

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def _get_markets(self, params: dict) -> list[dict]:
        query = {
            "vs_currency": "usd",
            "order": "market_cap_desc",
            "price_change_percentage": "24h,7d",
            "sparkline": "false",
        }
        query.update(params)

        def _request() -> list[dict]:
            response = self._session.get(f"{self.base_url}/coins/markets", params=query, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
            return payload if isinstance(payload, list) else []

        return retry_with_backoff(_request, label="coingecko markets", breaker=self._breaker)

    def _remember(self, rows: list[dict]) -> None:
        now = self._clock()
        with self._lock:
            for row in rows:
                symbol = str(row.get("symbol") or "").upper()
                if not symbol:
                    continue
                if symbol in self._ids and self._ids[symbol] != row.get("id"):
                    # Ticker collisions: keep the larger coin seen first.
                    continue
                self._ids[symbol] = str(row.get("id"))
                self._observe_volume(symbol, float(row.get("total_volume") or 0.0), now)
                self._rows[symbol] = (now, row)

    def _observe_volume(self, symbol: str, volume: float, now: float) -> None:
        samples = self._volume_samples.setdefault(symbol, deque())
        if not samples or now - samples[-1][0] >= VOLUME_SAMPLE_SECONDS:
            samples.append((now, volume))
        # keep only the newest sample that is already old enough to compare against
        while len(samples) > 1 and now - samples[1][0] >= self._baseline_seconds:
            samples.popleft()
        observed_at, baseline = samples[0]
        if now - observed_at >= self._baseline_seconds and baseline > 0:
            self._volume_ratio[symbol] = volume / baseline

    def list_universe(self, size: int) -> list[str]:
        try:
            rows = self._get_markets({"per_page": max(1, min(size, 250)), "page": 1})
        except (requests.RequestException, ValueError, CircuitOpenError) as exc:
            raise ProviderUnavailableError(f"CoinGecko universe unavailable: {exc}") from exc

        self._remember(rows)
        symbols: list[str] = []
        for row in rows:
            symbol = str(row.get("symbol") or "").upper()
            if symbol and symbol not in symbols:
                symbols.append(symbol)
        logger.info("Universe loaded: {} symbols", len(symbols))
        return symbols

    def _row_for(self, symbol: str) -> dict:
        with self._lock:
            cached = self._rows.get(symbol)
            coin_id = self._ids.get(symbol)
        if cached and self._clock() - cached[0] < ROW_TTL_SECONDS:
            return cached[1]

        params = {"ids": coin_id} if coin_id else {"symbols": symbol.lower()}
        try:
            rows = self._get_markets(params)
        except (requests.RequestException, ValueError, CircuitOpenError) as exc:
            raise ProviderUnavailableError(f"No market data for {symbol}: {exc}", symbol=symbol) from exc

        self._remember(rows)
        with self._lock:
            fresh = self._rows.get(symbol)
        if fresh is None:
            raise ProviderUnavailableError(f"Unknown symbol {symbol}", symbol=symbol)
        return fresh[1]

    def get_snapshot(self, symbol: str) -> MarketSnapshot:
        symbol = symbol.upper()
        row = self._row_for(symbol)
        price = row.get("current_price")
        if price is None or float(price) <= 0:
            raise ProviderUnavailableError(f"No usable price for {symbol}", symbol=symbol)

        sentiment = 50.0
        if self.news is not None:
            sentiment = self.news.fetch_news_for_symbol(symbol).sentiment_score

        with self._lock:
            ratio = self._volume_ratio.get(symbol)

        return MarketSnapshot(
            symbol=symbol,
            name=str(row.get("name") or symbol),
            price=float(price),
            volume_24h=float(row.get("total_volume") or 0.0),
            price_change_24h=float(row.get("price_change_percentage_24h_in_currency") or 0.0),
            price_change_7d=float(row.get("price_change_percentage_7d_in_currency") or 0.0),
            sentiment_score=sentiment,
            market_cap=float(row.get("market_cap") or 0.0),
            volume_change_ratio=ratio,
        )
