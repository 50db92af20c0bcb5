from __future__ import annotations

import random
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator

from loguru import logger

from .db import delete_holding, get_connection, insert_trade, read_portfolio, upsert_holding, write_cash
from .errors import (
    EngineShutdownError,
    ExecutionError,
    InsufficientFundsError,
    InsufficientQuantityError,
    PersistenceError,
)
from .models import Holding, Trade, TradeOrder, to_decimal, utc_now
from .resilience import KeyedLocks
from .risk import DailyLossBreaker
from .settings import settings


MONEY_QUANT = Decimal("0.00000001")

_UNSET: Any = object()


class ExecutionEngine:
    """The only writer of portfolio cash and holdings.

    Every execution for a portfolio runs under that portfolio's lock and
    commits cash, holding and trade row in one SQLite transaction.
    """

    def __init__(
        self,
        breaker: DailyLossBreaker,
        db_path: Path | None = None,
        fee_rate: float | None = None,
        min_slippage_rate: float | None = None,
        max_slippage_rate: float | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.breaker = breaker
        self.db_path = db_path
        self.fee_rate = to_decimal(settings.fee_rate if fee_rate is None else fee_rate)
        self.min_slippage_rate = settings.min_slippage_rate if min_slippage_rate is None else min_slippage_rate
        self.max_slippage_rate = settings.max_slippage_rate if max_slippage_rate is None else max_slippage_rate
        self._rng = rng or random.Random()
        self._clock = clock
        self._locks = KeyedLocks()
        self._admission = threading.Condition()
        self._inflight = 0
        self._closing = False

    # ── lifecycle ─────────────────────────────────────────────────

    def _enter(self) -> None:
        with self._admission:
            if self._closing:
                raise EngineShutdownError("Execution engine is shutting down")
            self._inflight += 1

    def _leave(self) -> None:
        with self._admission:
            self._inflight -= 1
            self._admission.notify_all()

    def shutdown(self, timeout: float | None = None) -> bool:
        """Refuse new executions and wait for in-flight ones; False on timeout."""
        with self._admission:
            self._closing = True
            drained = self._admission.wait_for(lambda: self._inflight == 0, timeout=timeout)
        if drained:
            logger.info("Execution engine drained")
        else:
            logger.warning("Execution engine shutdown timed out with {} in flight", self._inflight)
        return drained

    @property
    def inflight(self) -> int:
        with self._admission:
            return self._inflight

    @contextmanager
    def guard(self, portfolio_id: str) -> Iterator[None]:
        """Hold the portfolio's lock across read, validate and execute.

        Nothing else can trade the portfolio until the block exits, so a
        risk check made inside it still holds when ``execute`` commits.
        """
        self._enter()
        try:
            with self._locks.get(portfolio_id):
                yield
        finally:
            self._leave()

    # ── execution ─────────────────────────────────────────────────

    def _slippage_rate(self) -> Decimal:
        rate = self._rng.uniform(self.min_slippage_rate, self.max_slippage_rate)
        return to_decimal(rate)

    def execute(self, order: TradeOrder) -> Trade:
        if order.quantity <= 0 or order.price <= 0:
            raise ExecutionError(f"Order for {order.symbol} needs positive quantity and price")

        with self.guard(order.portfolio_id):
            trade, pnl, value_before = self._apply(order)
            if pnl is not None:
                self.breaker.record_realized_pnl(order.portfolio_id, pnl, value_before)
        return trade

    def _apply(self, order: TradeOrder) -> tuple[Trade, Decimal | None, Decimal]:
        conn = get_connection(self.db_path)
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            portfolio = read_portfolio(conn, order.portfolio_id)
            if portfolio is None:
                raise PersistenceError(f"Unknown portfolio {order.portfolio_id}")

            value_before = portfolio.total_value({order.symbol: order.price})
            if order.side == "SELL":
                # open the day's state before this trade lands in the ledger it is seeded from
                self.breaker.snapshot(order.portfolio_id, value_before)
            notional = order.quantity * order.price
            fee = (notional * self.fee_rate).quantize(MONEY_QUANT)
            slippage = (notional * self._slippage_rate()).quantize(MONEY_QUANT)
            now = self._clock()
            holding = portfolio.holdings.get(order.symbol)
            realized: Decimal | None = None

            if order.side == "BUY":
                total = notional + fee + slippage
                if portfolio.cash < total:
                    raise InsufficientFundsError(
                        f"Insufficient funds for {order.symbol}: need {total:.2f}, have {portfolio.cash:.2f}"
                    )
                cash_after = portfolio.cash - total
                if holding is None:
                    updated = Holding(
                        symbol=order.symbol,
                        quantity=order.quantity,
                        average_price=order.price,
                        stop_loss=order.stop_loss,
                        take_profit=order.take_profit,
                        take_profit_2=order.take_profit_2,
                    )
                else:
                    quantity = holding.quantity + order.quantity
                    average = (holding.quantity * holding.average_price + notional) / quantity
                    updated = replace(
                        holding,
                        quantity=quantity,
                        average_price=average,
                        stop_loss=order.stop_loss if order.stop_loss is not None else holding.stop_loss,
                        take_profit=order.take_profit if order.take_profit is not None else holding.take_profit,
                        take_profit_2=(
                            order.take_profit_2 if order.take_profit_2 is not None else holding.take_profit_2
                        ),
                    )
                upsert_holding(conn, order.portfolio_id, updated)
            else:
                held = holding.quantity if holding else Decimal("0")
                if holding is None or held < order.quantity:
                    raise InsufficientQuantityError(
                        f"Insufficient quantity for {order.symbol}: holding {held}, requested {order.quantity}"
                    )
                total = notional - fee - slippage
                cash_after = portfolio.cash + total
                realized = (total - order.quantity * holding.average_price).quantize(MONEY_QUANT)
                remaining = holding.quantity - order.quantity
                if remaining == 0:
                    delete_holding(conn, order.portfolio_id, order.symbol)
                else:
                    upsert_holding(conn, order.portfolio_id, replace(holding, quantity=remaining))

            if cash_after < 0:
                raise InsufficientFundsError(f"Trade would leave negative cash ({cash_after})")

            write_cash(conn, order.portfolio_id, cash_after, now)
            trade = Trade(
                portfolio_id=order.portfolio_id,
                symbol=order.symbol,
                side=order.side,
                quantity=order.quantity,
                price=order.price,
                fee=fee,
                slippage=slippage,
                total_cost=total,
                reasoning=order.reasoning,
                recommendation_id=order.recommendation_id,
                stop_loss=order.stop_loss,
                take_profit=order.take_profit,
                execution_method=order.execution_method,
                initiated_by=order.initiated_by,
                executed_at=now,
                realized_pnl=realized,
            )
            trade_id = insert_trade(conn, trade)
            conn.execute("COMMIT")
        except ExecutionError:
            self._rollback(conn)
            raise
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise PersistenceError(f"Failed to persist {order.side} {order.symbol}: {exc}") from exc
        finally:
            conn.close()

        trade = replace(trade, id=trade_id)
        logger.info(
            "{} {} {} @ {} (fee {}, slippage {}, total {}) via {}",
            trade.side,
            trade.quantity,
            trade.symbol,
            trade.price,
            trade.fee,
            trade.slippage,
            trade.total_cost,
            trade.execution_method,
        )
        return trade, realized, value_before

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    # ── protection levels ─────────────────────────────────────────

    def update_protection(
        self,
        portfolio_id: str,
        symbol: str,
        stop_loss: Decimal | None = _UNSET,
        take_profit: Decimal | None = _UNSET,
        take_profit_2: Decimal | None = _UNSET,
        trailing: bool | None = None,
    ) -> Holding | None:
        """Change stop/take-profit levels of an open holding; None if it is gone."""
        with self.guard(portfolio_id):
            conn = get_connection(self.db_path)
            conn.isolation_level = None
            try:
                conn.execute("BEGIN IMMEDIATE")
                portfolio = read_portfolio(conn, portfolio_id)
                holding = portfolio.holdings.get(symbol) if portfolio else None
                if holding is None:
                    conn.execute("ROLLBACK")
                    return None
                changes: dict[str, Any] = {}
                if stop_loss is not _UNSET:
                    changes["stop_loss"] = stop_loss
                if take_profit is not _UNSET:
                    changes["take_profit"] = take_profit
                if take_profit_2 is not _UNSET:
                    changes["take_profit_2"] = take_profit_2
                if trailing is not None:
                    changes["trailing"] = trailing
                updated = replace(holding, **changes)
                upsert_holding(conn, portfolio_id, updated)
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback(conn)
                raise PersistenceError(f"Failed to update protection for {symbol}: {exc}") from exc
            finally:
                conn.close()

        logger.info(
            "Protection for {} in {}: stop={} tp={} tp2={} trailing={}",
            symbol,
            portfolio_id,
            updated.stop_loss,
            updated.take_profit,
            updated.take_profit_2,
            updated.trailing,
        )
        return updated
