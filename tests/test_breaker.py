from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from paper_advisor.risk import DailyLossBreaker


def test_realized_pnl_is_netted_within_the_day(today):
    breaker = DailyLossBreaker(0.03, timezone="UTC", today=today)

    assert not breaker.record_realized_pnl("p", Decimal("200"), Decimal("10000"))
    assert not breaker.record_realized_pnl("p", Decimal("-400"), Decimal("10200"))
    assert breaker.snapshot("p", Decimal("9800")).cumulative_loss_fraction == 0.02
    assert breaker.record_realized_pnl("p", Decimal("-150"), Decimal("9800"))
    assert breaker.is_tripped("p", Decimal("9650"))


def test_exact_threshold_trips_once(today):
    trips = []
    breaker = DailyLossBreaker(0.03, timezone="UTC", today=today, on_trip=lambda pid, state: trips.append(pid))

    assert breaker.record_realized_pnl("p", Decimal("-300"), Decimal("10000"))
    assert not breaker.record_realized_pnl("p", Decimal("-50"), Decimal("9700"))
    assert trips == ["p"]


def test_breaker_resets_on_the_next_date(today):
    breaker = DailyLossBreaker(0.03, timezone="UTC", today=today)
    breaker.record_realized_pnl("p", Decimal("-500"), Decimal("10000"))
    assert breaker.is_tripped("p", Decimal("9500"))

    today.value = date(2026, 1, 6)
    state = breaker.snapshot("p", Decimal("9500"))

    assert not state.tripped
    assert state.realized_pnl == 0
    assert state.start_of_day_value == Decimal("9500")
    assert state.date_key == "2026-01-06"


def test_portfolios_are_tracked_independently(today):
    breaker = DailyLossBreaker(0.03, timezone="UTC", today=today)
    breaker.record_realized_pnl("a", Decimal("-500"), Decimal("10000"))

    assert breaker.is_tripped("a", Decimal("9500"))
    assert not breaker.is_tripped("b", Decimal("10000"))


def test_day_state_is_seeded_from_the_ledger(today):
    seen = []

    def lookup(portfolio_id, since):
        seen.append((portfolio_id, since))
        return Decimal("-250")

    breaker = DailyLossBreaker(0.03, timezone="UTC", today=today, ledger_lookup=lookup)
    state = breaker.snapshot("p", Decimal("9750"))

    assert state.start_of_day_value == Decimal("10000")
    assert state.cumulative_loss_fraction == 0.025
    assert seen == [("p", datetime(2026, 1, 5, tzinfo=ZoneInfo("UTC")))]
    assert breaker.record_realized_pnl("p", Decimal("-60"), Decimal("9750"))


def test_restart_after_a_bad_day_comes_up_tripped(today):
    breaker = DailyLossBreaker(0.03, timezone="UTC", today=today, ledger_lookup=lambda pid, since: Decimal("-400"))

    assert breaker.is_tripped("p", Decimal("9600"))


def test_gains_never_trip(today):
    breaker = DailyLossBreaker(0.03, timezone="UTC", today=today)
    assert not breaker.record_realized_pnl("p", Decimal("5000"), Decimal("10000"))
    assert breaker.snapshot("p", Decimal("15000")).cumulative_loss_fraction == 0.0
