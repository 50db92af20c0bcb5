from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Literal, Protocol, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, TypeAdapter, ValidationError, model_validator
import requests

from .errors import VerdictError
from .models import Holding, Opportunity
from .resilience import CircuitBreaker, retry_with_backoff
from .settings import settings


# ── verdict payload ───────────────────────────────────────────────


class VerdictReasoning(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    bull_case: str = Field(default="", alias="bullCase")
    bear_case: str = Field(default="", alias="bearCase")
    conclusion: str = ""


class _VerdictBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    confidence: float = Field(ge=0, le=100)
    reasoning: VerdictReasoning = Field(default_factory=VerdictReasoning)
    position_size: float = Field(default=0.0, ge=0, le=1, alias="positionSize")
    risk_level: Literal["LOW", "MEDIUM", "HIGH"] = Field(default="MEDIUM", alias="riskLevel")
    key_factors: list[str] = Field(default_factory=list, alias="keyFactors")
    sources: list[str] = Field(default_factory=list)
    timeframe: str = ""


class BuyVerdict(_VerdictBase):
    action: Literal["BUY"]
    entry_price: PositiveFloat = Field(alias="entryPrice")
    stop_loss: PositiveFloat = Field(alias="stopLoss")
    take_profit_levels: list[PositiveFloat] = Field(default_factory=list, alias="takeProfitLevels", max_length=2)

    @model_validator(mode="after")
    def stop_below_entry(self) -> "BuyVerdict":
        if self.stop_loss >= self.entry_price:
            raise ValueError("stopLoss must be below entryPrice for a BUY")
        return self


class SellVerdict(_VerdictBase):
    action: Literal["SELL"]
    entry_price: PositiveFloat | None = Field(default=None, alias="entryPrice")
    stop_loss: PositiveFloat | None = Field(default=None, alias="stopLoss")
    take_profit_levels: list[PositiveFloat] = Field(default_factory=list, alias="takeProfitLevels", max_length=2)


class HoldVerdict(_VerdictBase):
    action: Literal["HOLD"]
    entry_price: float | None = Field(default=None, alias="entryPrice")
    stop_loss: float | None = Field(default=None, alias="stopLoss")
    take_profit_levels: list[float] = Field(default_factory=list, alias="takeProfitLevels")


Verdict = Annotated[Union[BuyVerdict, SellVerdict, HoldVerdict], Field(discriminator="action")]

VERDICT_ADAPTER: TypeAdapter[Verdict] = TypeAdapter(Verdict)


def parse_verdict(payload: dict | str) -> BuyVerdict | SellVerdict | HoldVerdict:
    """Validate an untrusted verdict payload; raises VerdictError."""
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise VerdictError(f"Verdict is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise VerdictError(f"Verdict must be a JSON object, got {type(payload).__name__}")

    payload = dict(payload)
    if isinstance(payload.get("action"), str):
        payload["action"] = payload["action"].strip().upper()
    if isinstance(payload.get("riskLevel"), str):
        payload["riskLevel"] = payload["riskLevel"].strip().upper()

    try:
        return VERDICT_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise VerdictError(f"Invalid verdict: {exc.error_count()} error(s): {exc.errors()[0]['msg']}") from exc


# ── context ───────────────────────────────────────────────────────


@dataclass
class ContextBundle:
    symbol: str
    current_price: float
    opportunity: Opportunity
    indicators: dict[str, Any] = field(default_factory=dict)
    headlines: list[str] = field(default_factory=list)
    sentiment_score: float = 50.0
    macro: dict[str, Any] = field(default_factory=dict)
    holding: Holding | None = None


def build_prompt(bundle: ContextBundle) -> str:
    opportunity = bundle.opportunity
    lines = [
        f"You are a cryptocurrency trading analyst. Analyze {bundle.symbol} and provide a trading recommendation.",
        "",
        f"Current price: ${bundle.current_price:,.6f}",
        f"Opportunity: {opportunity.direction} ({opportunity.reason}, urgency {opportunity.urgency})",
    ]
    if bundle.holding is not None:
        lines.append(
            f"Open position: {bundle.holding.quantity} units @ ${bundle.holding.average_price}"
            f" ({opportunity.percent_gain or 0.0:+.2f}%)"
        )

    lines.append("")
    lines.append("Indicators:")
    for key, value in bundle.indicators.items():
        lines.append(f"- {key}: {value}")

    lines.append("")
    lines.append(f"News sentiment score (0-100): {bundle.sentiment_score:.1f}")
    if bundle.headlines:
        lines.append("Recent headlines:")
        lines.extend(f"{i + 1}. {title}" for i, title in enumerate(bundle.headlines[:5]))

    lines.append("")
    lines.append("Market context:")
    for key, value in bundle.macro.items():
        lines.append(f"- {key}: {value}")

    lines.append(
        """
Respond with JSON only:
{
  "action": "BUY" | "SELL" | "HOLD",
  "confidence": 0-100,
  "reasoning": {"bullCase": "...", "bearCase": "...", "conclusion": "..."},
  "entryPrice": entry price in USD or null,
  "stopLoss": stop-loss price or null,
  "takeProfitLevels": [target1, target2],
  "positionSize": 0.01-0.05,
  "riskLevel": "LOW" | "MEDIUM" | "HIGH",
  "keyFactors": ["..."],
  "sources": ["technical", "sentiment", "news", "market_context"],
  "timeframe": "short-term (1-3 days)" | "medium-term (1-2 weeks)" | "long-term (1+ months)"
}
A stop loss below the entry price is mandatory for BUY. Be conservative; confidence rarely above 80."""
    )
    return "\n".join(lines)


# ── generators ────────────────────────────────────────────────────


class VerdictGenerator(Protocol):
    def generate_verdict(self, bundle: ContextBundle) -> dict:
        """Raw verdict payload for one asset."""


class OpenAIVerdictGenerator:
    """Chat-completions client in JSON mode.

    All attempts for one verdict share a budget of ``verdict_timeout_seconds``:
    each HTTP timeout is cut to what is left and no retry starts once it is
    spent, so the worker is free again by the time the batch gives up on it.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        breaker: CircuitBreaker | None = None,
        budget_seconds: float | None = None,
    ) -> None:
        self.base_url = settings.openai_base_url.rstrip("/")
        self.timeout_seconds = settings.openai_timeout_seconds
        self.budget_seconds = budget_seconds or settings.verdict_timeout_seconds
        self.model = settings.openai_model
        self._session = session or requests.Session()
        self._breaker = breaker or CircuitBreaker("openai")

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def is_configured(self) -> bool:
        return bool(settings.openai_api_key.strip())

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {settings.openai_api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _extract_text_response(payload: dict) -> str:
        choices = payload.get("choices", [])
        if choices:
            content = choices[0].get("message", {}).get("content", "")
            if isinstance(content, str):
                return content
            if isinstance(content, list):
                return "\n".join(
                    str(part.get("text", ""))
                    for part in content
                    if isinstance(part, dict) and part.get("type") == "text"
                )
        return "{}"

    def _complete(self, prompt: str, timeout: float) -> dict:
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": "You are a professional cryptocurrency trading analyst. Return only strict JSON.",
                },
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
            "temperature": settings.openai_temperature,
            "max_tokens": settings.openai_max_output_tokens,
        }
        response = self._session.post(
            f"{self.base_url}/chat/completions",
            headers=self._headers(),
            json=payload,
            timeout=timeout,
        )
        response.raise_for_status()
        return response.json() or {}

    def generate_verdict(self, bundle: ContextBundle) -> dict:
        if not self.is_configured():
            raise VerdictError("OpenAI API key is not configured")

        prompt = build_prompt(bundle)
        deadline = time.monotonic() + self.budget_seconds

        def attempt() -> dict:
            remaining = deadline - time.monotonic()
            return self._complete(prompt, max(1.0, min(self.timeout_seconds, remaining)))

        try:
            raw = retry_with_backoff(
                attempt,
                label=f"openai verdict {bundle.symbol}",
                breaker=self._breaker,
                retry_on=(requests.RequestException, ValueError),
                deadline=deadline,
            )
        except (requests.RequestException, ValueError) as exc:
            raise VerdictError(f"OpenAI request failed for {bundle.symbol}: {exc}") from exc

        text = self._extract_text_response(raw)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise VerdictError(f"OpenAI returned non-JSON content for {bundle.symbol}") from exc


class RuleBasedVerdictGenerator:
    """Local signal counting, used when no reasoning service is configured."""

    def generate_verdict(self, bundle: ContextBundle) -> dict:
        bullish = 0
        bearish = 0
        factors: list[str] = []
        change_24h = float(bundle.indicators.get("price_change_24h", 0.0))
        change_7d = float(bundle.indicators.get("price_change_7d", 0.0))
        reason = bundle.opportunity.reason

        if change_24h > 3:
            bullish += 1
            factors.append("24h momentum")
        elif change_24h < -3:
            bearish += 1
            factors.append("24h weakness")

        if change_7d > 5:
            bullish += 1
            factors.append("7d trend up")
        elif change_7d < -5:
            bearish += 1
            factors.append("7d trend down")

        if bundle.sentiment_score > 65:
            bullish += 1
            factors.append("positive sentiment")
        elif bundle.sentiment_score < 35:
            bearish += 1
            factors.append("negative sentiment")

        if reason == "breakout":
            bullish += 1
            factors.append("volume breakout")
        elif reason in ("profit_target", "risk_management"):
            bearish += 2 if bundle.opportunity.urgency == "high" else 1
            factors.append(reason.replace("_", " "))
        elif reason == "resistance":
            bearish += 1
            factors.append("near resistance")

        action = "HOLD"
        if bullish > bearish + 1:
            action = "BUY"
        elif bearish > bullish + 1:
            action = "SELL"

        price = bundle.current_price
        confidence = min(60, abs(bullish - bearish) * 15)
        logger.debug("Local verdict for {}: {} ({} bull / {} bear)", bundle.symbol, action, bullish, bearish)
        return {
            "action": action,
            "confidence": confidence,
            "reasoning": {
                "bullCase": f"Bullish signals: {bullish}",
                "bearCase": f"Bearish signals: {bearish}",
                "conclusion": "Local rule-based analysis",
            },
            "entryPrice": price if action == "BUY" else None,
            "stopLoss": price * 0.95 if action == "BUY" else None,
            "takeProfitLevels": [price * 1.05, price * 1.10] if action == "BUY" else [],
            "positionSize": 0.02,
            "riskLevel": "MEDIUM",
            "keyFactors": factors,
            "sources": ["local_analysis"],
            "timeframe": "short-term (1-3 days)",
        }


def default_verdict_generator(on_circuit_open: Callable[[str], None] | None = None) -> VerdictGenerator:
    generator = OpenAIVerdictGenerator(breaker=CircuitBreaker("openai", on_open=on_circuit_open))
    if generator.is_configured():
        return generator
    logger.warning("OPENAI_API_KEY not set; using the local rule-based verdict generator")
    return RuleBasedVerdictGenerator()
