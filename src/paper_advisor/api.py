from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Query
from loguru import logger

from .db import list_trades, recent_events
from .desk import ManualTradeRequest, ManualTradeResponse, trade_to_dict
from .errors import StageBusyError
from .portfolio import portfolio_performance
from .service import STAGES, AdvisorService


class ManualTradePayload(ManualTradeRequest):
    confirm_warnings: bool = False


def _recommendation_to_dict(rec) -> dict[str, Any]:
    return {
        "id": rec.id,
        "symbol": rec.symbol,
        "action": rec.action,
        "direction": rec.direction,
        "confidence": rec.confidence,
        "entry_price": rec.entry_price,
        "stop_loss": rec.stop_loss,
        "take_profit_levels": rec.take_profit_levels,
        "position_size_fraction": rec.position_size_fraction,
        "risk_level": rec.risk_level,
        "reasoning": rec.reasoning,
        "sources": rec.sources,
        "opportunity_reason": rec.opportunity_reason,
        "urgency": rec.urgency,
        "execution_status": rec.execution_status,
        "created_at": rec.created_at.isoformat(),
        "expires_at": rec.expires_at.isoformat(),
    }


def create_app(service: AdvisorService | None = None) -> FastAPI:
    owned = service is None
    advisor = service or AdvisorService()
    app = FastAPI(title="Paper Advisor API", version="0.1.0")
    app.state.service = advisor

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        if owned:
            advisor.shutdown()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/status")
    def get_status() -> dict[str, Any]:
        return advisor.status()

    @app.get("/portfolio")
    def get_portfolio() -> dict[str, Any]:
        portfolio = advisor.load_portfolio()
        marks = advisor.marks(portfolio)
        holdings = []
        for symbol, h in portfolio.holdings.items():
            mark = marks.get(symbol)
            holdings.append(
                {
                    "symbol": symbol,
                    "quantity": float(h.quantity),
                    "average_price": float(h.average_price),
                    "mark": float(mark) if mark is not None else None,
                    "percent_gain": round(h.percent_gain(mark), 2) if mark is not None else None,
                    "stop_loss": float(h.stop_loss) if h.stop_loss is not None else None,
                    "take_profit": float(h.take_profit) if h.take_profit is not None else None,
                    "take_profit_2": float(h.take_profit_2) if h.take_profit_2 is not None else None,
                    "trailing": h.trailing,
                }
            )
        performance = portfolio_performance(portfolio.portfolio_id, db_path=advisor.db_path)
        return {
            "portfolio_id": portfolio.portfolio_id,
            "cash": float(portfolio.cash),
            "total_value": float(portfolio.total_value(marks)),
            "holdings": holdings,
            "performance": performance.__dict__,
        }

    @app.get("/trades")
    def get_trades(limit: int = Query(default=50, ge=1, le=1000)) -> list[dict[str, Any]]:
        trades = list_trades(advisor.portfolio_id, limit=limit, db_path=advisor.db_path)
        return [trade_to_dict(t) for t in trades]

    @app.get("/recommendations")
    def get_recommendations() -> list[dict[str, Any]]:
        return [_recommendation_to_dict(rec) for rec in advisor.orchestrator.active()]

    @app.get("/discovery")
    def get_discovery() -> dict[str, Any]:
        candidates = advisor.current_candidates()
        return {
            "summary": advisor.latest_discovery.summary() if advisor.latest_discovery else None,
            "candidates": [
                {
                    "symbol": c.symbol,
                    "price": c.snapshot.price,
                    "volume_score": round(c.volume_score, 2),
                    "momentum_score": round(c.momentum_score, 2),
                    "sentiment_score": round(c.sentiment_score, 2),
                    "composite_score": round(c.composite_score, 2),
                    "discovered_at": c.discovered_at.isoformat(),
                }
                for c in candidates
            ],
        }

    @app.get("/events")
    def get_events(limit: int = Query(default=50, ge=1, le=500)) -> list[dict[str, Any]]:
        return recent_events(limit=limit, db_path=advisor.db_path)

    @app.post("/trades")
    def post_trade(payload: ManualTradePayload) -> ManualTradeResponse:
        request = ManualTradeRequest.model_validate(payload.model_dump(exclude={"confirm_warnings"}))
        response = advisor.desk.submit_manual_trade(request, confirm_warnings=payload.confirm_warnings)
        logger.info("Manual {} {} -> {}", request.side, request.symbol, response.status)
        return response

    @app.post("/stages/{name}/run")
    def run_stage(name: str) -> dict[str, Any]:
        if name not in STAGES:
            raise HTTPException(status_code=404, detail=f"Unknown stage '{name}'")
        try:
            summary = advisor.run_stage(name)
        except StageBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"stage": name, "summary": summary}

    return app
