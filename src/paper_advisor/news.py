"""News headlines, keyword sentiment and the crypto Fear & Greed index.

Feeds are shared across symbols, so each feed is fetched at most once per
cache window and filtered per symbol by alias matching.
"""

from __future__ import annotations

import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from loguru import logger
import requests

from .errors import CircuitOpenError
from .resilience import CircuitBreaker, retry_with_backoff
from .settings import settings


POSITIVE_WORDS = [
    "surge", "rally", "gain", "bull", "breakout", "adoption", "approval",
    "soar", "jump", "spike", "upgrade", "record", "growth", "momentum",
    "bullish", "recover", "partnership", "launch", "milestone", "inflow",
]

NEGATIVE_WORDS = [
    "drop", "selloff", "loss", "bear", "hack", "exploit", "ban", "lawsuit",
    "crash", "plunge", "dump", "downgrade", "fraud", "scam", "warning",
    "decline", "bearish", "fear", "bankrupt", "investigation", "outflow",
]

SYMBOL_ALIASES: dict[str, list[str]] = {
    "BTC": ["btc", "bitcoin"],
    "ETH": ["eth", "ethereum"],
    "SOL": ["sol", "solana"],
    "DOGE": ["doge", "dogecoin"],
    "XRP": ["xrp", "ripple"],
    "ADA": ["ada", "cardano"],
    "AVAX": ["avax", "avalanche"],
    "LINK": ["chainlink"],
    "DOT": ["polkadot"],
    "MATIC": ["matic", "polygon"],
}

FEAR_GREED_API = "https://api.alternative.me/fng/?limit=1"
FEED_CACHE_SECONDS = 600


@dataclass
class NewsHeadline:
    symbol: str
    title: str
    source: str
    url: str
    published: str
    sentiment: float  # -1.0 to 1.0


@dataclass
class SymbolNews:
    symbol: str
    headlines: list[NewsHeadline] = field(default_factory=list)

    @property
    def average_sentiment(self) -> float:
        if not self.headlines:
            return 0.0
        return sum(h.sentiment for h in self.headlines) / len(self.headlines)

    @property
    def sentiment_score(self) -> float:
        """Average headline sentiment mapped onto 0-100; 50 when nothing matched."""
        return round((self.average_sentiment + 1.0) * 50.0, 2)


def score_text(text: str) -> float:
    text_lower = text.lower()
    pos = sum(1 for w in POSITIVE_WORDS if w in text_lower)
    neg = sum(1 for w in NEGATIVE_WORDS if w in text_lower)
    total = pos + neg
    if total == 0:
        return 0.0
    return max(-1.0, min(1.0, (pos - neg) / total))


class NewsClient:
    def __init__(self, feed_urls: list[str] | None = None, session: requests.Session | None = None) -> None:
        if feed_urls is None:
            feed_urls = [url.strip() for url in settings.news_feed_urls_csv.split(",") if url.strip()]
        self.feed_urls = feed_urls
        self.timeout = settings.news_request_timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "paper-advisor/0.1 (news aggregator)"})
        self._breaker = CircuitBreaker("news")
        self._lock = threading.Lock()
        self._feed_cache: dict[str, tuple[float, list[dict]]] = {}
        self._fear_greed_cache: dict | None = None
        self._fear_greed_ts = 0.0

    def fetch_news_for_symbol(self, symbol: str) -> SymbolNews:
        aliases = SYMBOL_ALIASES.get(symbol.upper(), [symbol.lower()])
        news = SymbolNews(symbol=symbol)
        seen: set[str] = set()

        for feed_url in self.feed_urls:
            for item in self._feed_items(feed_url):
                text = f"{item.get('title', '')} {item.get('summary', '')}".lower()
                if not any(alias in text for alias in aliases):
                    continue
                key = item.get("title", "").lower().strip()
                if key in seen:
                    continue
                seen.add(key)
                news.headlines.append(
                    NewsHeadline(
                        symbol=symbol,
                        title=item.get("title", ""),
                        source=feed_url.split("/")[2] if "//" in feed_url else feed_url,
                        url=item.get("url", ""),
                        published=item.get("published", ""),
                        sentiment=score_text(text),
                    )
                )
                if len(news.headlines) >= settings.news_max_items_per_symbol:
                    return news
        return news

    def market_mood(self) -> dict:
        """Crypto Fear & Greed index (cached 30 min); neutral when unavailable."""
        now = time.time()
        if self._fear_greed_cache and now - self._fear_greed_ts < 1800:
            return self._fear_greed_cache

        try:
            data = retry_with_backoff(
                lambda: self._get_json(FEAR_GREED_API),
                label="fear_greed",
                breaker=self._breaker,
            )
            rows = data.get("data") or []
            if rows:
                mood = {
                    "fear_greed_index": int(rows[0].get("value", 50)),
                    "label": rows[0].get("value_classification", "Neutral"),
                }
                self._fear_greed_cache = mood
                self._fear_greed_ts = now
                return mood
        except (requests.RequestException, ValueError, CircuitOpenError) as exc:
            logger.debug("Fear & Greed lookup failed: {}", exc)

        return {"fear_greed_index": 50, "label": "Neutral"}

    def _get_json(self, url: str) -> dict:
        response = self._session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.json() or {}

    def _feed_items(self, feed_url: str) -> list[dict]:
        now = time.time()
        with self._lock:
            cached = self._feed_cache.get(feed_url)
            if cached and now - cached[0] < FEED_CACHE_SECONDS:
                return cached[1]

        try:
            items = retry_with_backoff(
                lambda: self._fetch_feed_items(feed_url),
                label=f"news feed {feed_url}",
                breaker=self._breaker,
            )
        except (requests.RequestException, ET.ParseError, CircuitOpenError) as exc:
            logger.warning("News feed read failed for {}: {}", feed_url, exc)
            items = []

        with self._lock:
            self._feed_cache[feed_url] = (now, items)
        return items

    def _fetch_feed_items(self, feed_url: str) -> list[dict]:
        response = self._session.get(feed_url, timeout=self.timeout)
        response.raise_for_status()

        root = ET.fromstring(response.text)
        limit = settings.news_max_items_per_feed
        results: list[dict] = []

        for item in root.findall(".//item")[:limit]:
            results.append(
                {
                    "title": self._xml_text(item.find("title")),
                    "summary": self._xml_text(item.find("description")),
                    "url": self._xml_text(item.find("link")),
                    "published": self._xml_text(item.find("pubDate")),
                }
            )
        if results:
            return results

        ns = "{http://www.w3.org/2005/Atom}"
        for entry in root.findall(f".//{ns}entry")[:limit]:
            link_elem = entry.find(f"{ns}link")
            results.append(
                {
                    "title": self._xml_text(entry.find(f"{ns}title")),
                    "summary": self._xml_text(entry.find(f"{ns}summary")),
                    "url": link_elem.attrib.get("href", "") if link_elem is not None else "",
                    "published": self._xml_text(entry.find(f"{ns}updated")),
                }
            )
        return results

    @staticmethod
    def _xml_text(node: ET.Element | None) -> str:
        if node is None or node.text is None:
            return ""
        return node.text.strip()
