import json
from decimal import Decimal

import pytest
import requests

from conftest import make_candidate
from paper_advisor.errors import VerdictError
from paper_advisor.models import Holding, Opportunity
from paper_advisor.settings import settings
from paper_advisor.verdicts import (
    ContextBundle,
    OpenAIVerdictGenerator,
    RuleBasedVerdictGenerator,
    build_prompt,
    parse_verdict,
)


class FakeResponse:
    def __init__(self, payload, status: int = 200) -> None:
        self._payload = payload
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, response) -> None:
        self.response = response
        self.posts: list[dict] = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.posts.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _entry_bundle(reason: str = "breakout", change_24h: float = 8.0, change_7d: float = 12.0, sentiment: float = 72.0):
    candidate = make_candidate("SOL", volume=80, momentum=75, composite=79)
    opportunity = Opportunity(
        symbol="SOL",
        direction="ENTRY",
        reason=reason,
        urgency="high",
        magnitude=79,
        candidate=candidate,
        current_price=100.0,
    )
    return ContextBundle(
        symbol="SOL",
        current_price=100.0,
        opportunity=opportunity,
        indicators={"price_change_24h": change_24h, "price_change_7d": change_7d, "composite_score": 79},
        headlines=["Solana upgrade ships"],
        sentiment_score=sentiment,
        macro={"fear_greed_index": 61, "label": "Greed"},
    )


def _exit_bundle():
    holding = Holding("SOL", Decimal("2"), Decimal("60"))
    opportunity = Opportunity(
        symbol="SOL",
        direction="EXIT",
        reason="profit_target",
        urgency="high",
        magnitude=66.7,
        holding=holding,
        current_price=100.0,
        percent_gain=66.7,
    )
    return ContextBundle(
        symbol="SOL",
        current_price=100.0,
        opportunity=opportunity,
        indicators={"price_change_24h": -4.0, "price_change_7d": 2.0},
        sentiment_score=50.0,
        holding=holding,
    )


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", "sk-test")
    monkeypatch.setattr(settings, "retry_max_attempts", 1)


def test_prompt_carries_context():
    prompt = build_prompt(_entry_bundle())

    assert "Analyze SOL" in prompt
    assert "ENTRY (breakout, urgency high)" in prompt
    assert "1. Solana upgrade ships" in prompt
    assert "fear_greed_index: 61" in prompt
    assert "Respond with JSON only" in prompt


def test_exit_prompt_describes_the_position():
    assert "Open position: 2 units @ $60 (+66.70%)" in build_prompt(_exit_bundle())


def test_openai_generator_returns_the_json_content(configured):
    content = {"action": "BUY", "confidence": 72, "entryPrice": 100, "stopLoss": 94}
    session = FakeSession(FakeResponse({"choices": [{"message": {"content": json.dumps(content)}}]}))
    generator = OpenAIVerdictGenerator(session=session)

    payload = generator.generate_verdict(_entry_bundle())

    assert payload == content
    request = session.posts[0]
    assert request["url"].endswith("/chat/completions")
    assert request["headers"]["Authorization"] == "Bearer sk-test"
    assert request["json"]["response_format"] == {"type": "json_object"}


def test_openai_generator_wraps_failures(configured):
    generator = OpenAIVerdictGenerator(session=FakeSession(requests.ConnectionError("reset")))

    with pytest.raises(VerdictError):
        generator.generate_verdict(_entry_bundle())


def test_openai_attempts_share_the_verdict_budget(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", "sk-test")
    monkeypatch.setattr(settings, "retry_max_attempts", 3)
    monkeypatch.setattr(settings, "retry_base_delay_seconds", 0.0)
    session = FakeSession(requests.Timeout("read timed out"))
    generator = OpenAIVerdictGenerator(session=session, budget_seconds=5)

    with pytest.raises(VerdictError):
        generator.generate_verdict(_entry_bundle())

    assert len(session.posts) == 3
    assert all(post["timeout"] <= 5 for post in session.posts)


def test_openai_generator_rejects_non_json_content(configured):
    session = FakeSession(FakeResponse({"choices": [{"message": {"content": "I think you should buy"}}]}))

    with pytest.raises(VerdictError):
        OpenAIVerdictGenerator(session=session).generate_verdict(_entry_bundle())


def test_unconfigured_openai_generator_refuses(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", "")
    generator = OpenAIVerdictGenerator(session=FakeSession(FakeResponse({})))

    assert not generator.is_configured()
    with pytest.raises(VerdictError):
        generator.generate_verdict(_entry_bundle())


def test_rule_based_buy_is_a_valid_verdict():
    verdict = parse_verdict(RuleBasedVerdictGenerator().generate_verdict(_entry_bundle()))

    assert verdict.action == "BUY"
    assert verdict.confidence == 60
    assert verdict.stop_loss == pytest.approx(95.0)
    assert verdict.sources == ["local_analysis"]


def test_rule_based_exit_sells_on_high_urgency_profit():
    verdict = parse_verdict(RuleBasedVerdictGenerator().generate_verdict(_exit_bundle()))

    assert verdict.action == "SELL"
    assert verdict.confidence == 45


def test_rule_based_holds_on_mixed_signals():
    bundle = _entry_bundle(reason="discovery", change_24h=5.0, change_7d=-8.0, sentiment=50.0)

    assert RuleBasedVerdictGenerator().generate_verdict(bundle)["action"] == "HOLD"
