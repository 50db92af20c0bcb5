from decimal import Decimal

import pytest

from paper_advisor.db import active_recommendations, latest_candidates, recent_events
from paper_advisor.errors import StageBusyError
from paper_advisor.models import TradeOrder
from paper_advisor.scheduler import AdvisorScheduler


def test_discovery_then_recommendations(service, fixed_clock):
    summary = service.run_stage("discovery")

    assert summary["passed"] == 2
    assert [c["symbol"] for c in summary["top"]] == ["AAA", "BTC"]
    assert {c.symbol for c in latest_candidates(fixed_clock().replace(year=2000), db_path=service.db_path)} == {"AAA", "BTC"}

    batch = service.run_stage("recommendations")

    assert [r["symbol"] for r in batch["accepted"]] == ["AAA"]
    assert batch["metadata"]["rejections"]["hold"] == 1
    assert [r.symbol for r in active_recommendations(db_path=service.db_path)] == ["AAA"]
    assert service.state.snapshot()["stages"]["recommendations"]["last_status"] == "ok"


def test_unknown_stage_is_refused(service):
    with pytest.raises(ValueError):
        service.run_stage("rebalance")


def test_busy_stage_is_counted_as_skipped(service):
    with service.flights["monitor"].hold():
        with pytest.raises(StageBusyError):
            service.run_stage("monitor")

    assert service.state.stages["monitor"].skipped == 1
    assert "monitor" not in service.status()["busy_stages"]


def test_stage_failure_is_recorded_and_raised(service, monkeypatch):
    def explode(universe, profile):
        raise RuntimeError("scoring bug")

    monkeypatch.setattr(service.discovery, "discover", explode)

    with pytest.raises(RuntimeError):
        service.run_stage("discovery")

    record = service.state.stages["discovery"]
    assert record.last_status == "failed"
    assert record.consecutive_failures == 1
    assert recent_events(db_path=service.db_path)[0]["event_type"] == "stage_failed"


def test_auto_execute_is_off_by_default(service):
    assert service.run_stage("auto_execute") == {"enabled": False}


def test_daily_loss_trip_is_recorded_once(service):
    def order(side: str, price: str) -> TradeOrder:
        return TradeOrder(
            portfolio_id="default",
            symbol="BTC",
            side=side,
            quantity=Decimal("10"),
            price=Decimal(price),
            execution_method="manual",
            initiated_by="test",
        )

    service.engine.execute(order("BUY", "100"))
    service.engine.execute(order("SELL", "60"))

    portfolio = service.load_portfolio()
    state = service.breaker.snapshot("default", portfolio.total_value())
    assert state.tripped
    assert state.realized_pnl == Decimal("-401.2")
    halts = [e for e in recent_events(db_path=service.db_path) if e["event_type"] == "daily_loss_halt"]
    assert len(halts) == 1


def test_status_reports_exposure_and_runtime(service):
    service.run_stage("monitor")

    status = service.status()

    assert status["exposure"]["total_value"] == 10000.0
    assert status["inflight_executions"] == 0
    assert status["runtime"]["stages"]["monitor"]["runs"] == 1


def test_scheduler_registers_stage_jobs(service):
    scheduler = AdvisorScheduler(service)

    assert set(scheduler.intervals()) == {"discovery", "recommendations", "monitor"}
    scheduler.run_job("monitor")
    with service.flights["monitor"].hold():
        scheduler.run_job("monitor")

    assert service.state.stages["monitor"].runs == 1
    assert service.state.stages["monitor"].skipped == 1
