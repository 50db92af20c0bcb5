from __future__ import annotations

from decimal import Decimal
from typing import Callable, Sequence

from loguru import logger

from .errors import ProviderUnavailableError
from .models import URGENCY_RANK, Candidate, Holding, Opportunity, Portfolio


PriceLookup = Callable[[str], Decimal]


def classify_entry(candidate: Candidate) -> Opportunity:
    momentum = candidate.momentum_score
    volume = candidate.volume_score
    composite = candidate.composite_score

    if momentum >= 70 and volume >= 70:
        reason, urgency = "breakout", "high"
    elif momentum < 40 and composite >= 65:
        reason, urgency = "dip", "medium"
    elif composite >= 75:
        reason, urgency = "discovery", "high"
    else:
        reason, urgency = "discovery", "low"

    return Opportunity(
        symbol=candidate.symbol,
        direction="ENTRY",
        reason=reason,
        urgency=urgency,
        magnitude=composite,
        candidate=candidate,
        current_price=candidate.snapshot.price,
    )


def classify_exit(holding: Holding, price: Decimal) -> Opportunity | None:
    gain = holding.percent_gain(price)

    if gain > 25:
        reason, urgency = "profit_target", "high" if gain > 50 else "medium"
    elif gain < -20:
        reason, urgency = "risk_management", "high"
    elif gain < -10:
        reason, urgency = "risk_management", "medium"
    elif gain > 10:
        reason, urgency = "resistance", "low"
    else:
        return None

    return Opportunity(
        symbol=holding.symbol,
        direction="EXIT",
        reason=reason,
        urgency=urgency,
        magnitude=abs(gain),
        holding=holding,
        current_price=float(price),
        percent_gain=gain,
    )


def _priority(opportunity: Opportunity) -> tuple[int, float, str]:
    return (-URGENCY_RANK[opportunity.urgency], -opportunity.magnitude, opportunity.symbol)


def classify(
    candidates: Sequence[Candidate],
    portfolio: Portfolio,
    price_lookup: PriceLookup,
) -> tuple[list[Opportunity], list[Opportunity]]:
    """Split into entry opportunities (not held) and exit opportunities (held).

    Both lists are ordered by urgency, then by the size of the triggering
    score or percentage.
    """
    entries = [classify_entry(c) for c in candidates if not portfolio.holds(c.symbol)]

    exits: list[Opportunity] = []
    for symbol, holding in portfolio.holdings.items():
        try:
            price = price_lookup(symbol)
        except ProviderUnavailableError as exc:
            logger.warning("Classifier: skipping exit check for {}: {}", symbol, exc)
            continue
        opportunity = classify_exit(holding, price)
        if opportunity is not None:
            exits.append(opportunity)

    entries.sort(key=_priority)
    exits.sort(key=_priority)
    return entries, exits
