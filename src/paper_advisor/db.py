from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from .models import Candidate, Holding, MarketSnapshot, Portfolio, Recommendation, Trade, utc_now
from .settings import settings


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS portfolios (
    portfolio_id TEXT PRIMARY KEY,
    cash TEXT NOT NULL,
    starting_cash TEXT NOT NULL,
    last_trade_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS holdings (
    portfolio_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    quantity TEXT NOT NULL,
    average_price TEXT NOT NULL,
    stop_loss TEXT,
    take_profit TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (portfolio_id, symbol),
    FOREIGN KEY(portfolio_id) REFERENCES portfolios(portfolio_id)
);

CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    portfolio_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    quantity TEXT NOT NULL,
    price TEXT NOT NULL,
    fee TEXT NOT NULL,
    slippage TEXT NOT NULL,
    total_cost TEXT NOT NULL,
    realized_pnl TEXT,
    reasoning TEXT,
    recommendation_id INTEGER,
    stop_loss TEXT,
    take_profit TEXT,
    execution_method TEXT NOT NULL,
    initiated_by TEXT NOT NULL,
    executed_at TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS trades_append_only_update
BEFORE UPDATE ON trades
BEGIN
    SELECT RAISE(ABORT, 'trades are append-only');
END;

CREATE TRIGGER IF NOT EXISTS trades_append_only_delete
BEFORE DELETE ON trades
BEGIN
    SELECT RAISE(ABORT, 'trades are append-only');
END;

CREATE TABLE IF NOT EXISTS recommendations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    action TEXT NOT NULL,
    direction TEXT NOT NULL,
    confidence REAL NOT NULL,
    entry_price REAL,
    stop_loss REAL,
    take_profit_1 REAL,
    take_profit_2 REAL,
    position_size REAL,
    risk_level TEXT,
    reasoning_json TEXT,
    sources_json TEXT,
    opportunity_reason TEXT,
    urgency TEXT,
    execution_status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS discovered_candidates (
    symbol TEXT PRIMARY KEY,
    name TEXT,
    profile TEXT NOT NULL,
    price REAL,
    market_cap REAL,
    volume_24h REAL,
    price_change_24h REAL,
    price_change_7d REAL,
    volume_score REAL,
    momentum_score REAL,
    sentiment_score REAL,
    composite_score REAL,
    discovered_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS system_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata_json TEXT,
    created_at TEXT NOT NULL
);
"""


def iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _text(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    path = Path(db_path or settings.db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_database(db_path: Path | None = None) -> None:
    with get_connection(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        _ensure_column(conn, "holdings", "take_profit_2", "TEXT")
        _ensure_column(conn, "holdings", "trailing", "INTEGER NOT NULL DEFAULT 0")
        conn.commit()


def _ensure_column(conn: sqlite3.Connection, table_name: str, column_name: str, column_type: str) -> None:
    info = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    existing = {row[1] for row in info}
    if column_name in existing:
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}")


# ── Portfolio ─────────────────────────────────────────────────────


def ensure_portfolio(portfolio_id: str, starting_cash: Decimal, db_path: Path | None = None) -> None:
    now = iso(utc_now())
    with get_connection(db_path) as conn:
        conn.execute(
            """
            INSERT OR IGNORE INTO portfolios (portfolio_id, cash, starting_cash, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (portfolio_id, str(starting_cash), str(starting_cash), now, now),
        )
        conn.commit()


def read_portfolio(conn: sqlite3.Connection, portfolio_id: str) -> Portfolio | None:
    row = conn.execute(
        "SELECT cash, last_trade_at FROM portfolios WHERE portfolio_id = ?",
        (portfolio_id,),
    ).fetchone()
    if row is None:
        return None

    holdings: dict[str, Holding] = {}
    for h in conn.execute(
        """
        SELECT symbol, quantity, average_price, stop_loss, take_profit, take_profit_2, trailing
        FROM holdings
        WHERE portfolio_id = ?
        ORDER BY symbol
        """,
        (portfolio_id,),
    ).fetchall():
        holdings[h["symbol"]] = Holding(
            symbol=h["symbol"],
            quantity=Decimal(h["quantity"]),
            average_price=Decimal(h["average_price"]),
            stop_loss=_dec(h["stop_loss"]),
            take_profit=_dec(h["take_profit"]),
            take_profit_2=_dec(h["take_profit_2"]),
            trailing=bool(h["trailing"]),
        )

    return Portfolio(
        portfolio_id=portfolio_id,
        cash=Decimal(row["cash"]),
        holdings=holdings,
        last_trade_at=_parse_dt(row["last_trade_at"]),
    )


def load_portfolio(portfolio_id: str, db_path: Path | None = None) -> Portfolio | None:
    with get_connection(db_path) as conn:
        return read_portfolio(conn, portfolio_id)


def write_cash(conn: sqlite3.Connection, portfolio_id: str, cash: Decimal, traded_at: datetime) -> None:
    conn.execute(
        "UPDATE portfolios SET cash = ?, last_trade_at = ?, updated_at = ? WHERE portfolio_id = ?",
        (str(cash), iso(traded_at), iso(traded_at), portfolio_id),
    )


def upsert_holding(conn: sqlite3.Connection, portfolio_id: str, holding: Holding) -> None:
    conn.execute(
        """
        INSERT INTO holdings (portfolio_id, symbol, quantity, average_price, stop_loss, take_profit,
                              take_profit_2, trailing, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(portfolio_id, symbol) DO UPDATE SET
            quantity = excluded.quantity,
            average_price = excluded.average_price,
            stop_loss = excluded.stop_loss,
            take_profit = excluded.take_profit,
            take_profit_2 = excluded.take_profit_2,
            trailing = excluded.trailing,
            updated_at = excluded.updated_at
        """,
        (
            portfolio_id,
            holding.symbol,
            str(holding.quantity),
            str(holding.average_price),
            _text(holding.stop_loss),
            _text(holding.take_profit),
            _text(holding.take_profit_2),
            int(holding.trailing),
            iso(utc_now()),
        ),
    )


def delete_holding(conn: sqlite3.Connection, portfolio_id: str, symbol: str) -> None:
    conn.execute("DELETE FROM holdings WHERE portfolio_id = ? AND symbol = ?", (portfolio_id, symbol))


# ── Trades ────────────────────────────────────────────────────────


def insert_trade(conn: sqlite3.Connection, trade: Trade) -> int:
    cursor = conn.execute(
        """
        INSERT INTO trades (portfolio_id, symbol, side, quantity, price, fee, slippage, total_cost,
                            realized_pnl, reasoning, recommendation_id, stop_loss, take_profit,
                            execution_method, initiated_by, executed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            trade.portfolio_id,
            trade.symbol,
            trade.side,
            str(trade.quantity),
            str(trade.price),
            str(trade.fee),
            str(trade.slippage),
            str(trade.total_cost),
            _text(trade.realized_pnl),
            trade.reasoning,
            trade.recommendation_id,
            _text(trade.stop_loss),
            _text(trade.take_profit),
            trade.execution_method,
            trade.initiated_by,
            iso(trade.executed_at),
        ),
    )
    return int(cursor.lastrowid)


def _row_to_trade(row: sqlite3.Row) -> Trade:
    return Trade(
        id=row["id"],
        portfolio_id=row["portfolio_id"],
        symbol=row["symbol"],
        side=row["side"],
        quantity=Decimal(row["quantity"]),
        price=Decimal(row["price"]),
        fee=Decimal(row["fee"]),
        slippage=Decimal(row["slippage"]),
        total_cost=Decimal(row["total_cost"]),
        realized_pnl=_dec(row["realized_pnl"]),
        reasoning=row["reasoning"] or "",
        recommendation_id=row["recommendation_id"],
        stop_loss=_dec(row["stop_loss"]),
        take_profit=_dec(row["take_profit"]),
        execution_method=row["execution_method"],
        initiated_by=row["initiated_by"],
        executed_at=datetime.fromisoformat(row["executed_at"]),
    )


def list_trades(
    portfolio_id: str,
    limit: int = 50,
    since: datetime | None = None,
    db_path: Path | None = None,
) -> list[Trade]:
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """
            SELECT * FROM trades
            WHERE portfolio_id = ? AND executed_at >= ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (portfolio_id, iso(since) if since else "", limit),
        ).fetchall()
    return [_row_to_trade(row) for row in rows]


def realized_pnl_since(portfolio_id: str, since: datetime, db_path: Path | None = None) -> Decimal:
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """
            SELECT realized_pnl FROM trades
            WHERE portfolio_id = ? AND side = 'SELL' AND realized_pnl IS NOT NULL AND executed_at >= ?
            """,
            (portfolio_id, iso(since)),
        ).fetchall()
    return sum((Decimal(row["realized_pnl"]) for row in rows), Decimal("0"))


# ── Recommendations ───────────────────────────────────────────────


def insert_recommendation(rec: Recommendation, db_path: Path | None = None) -> int:
    levels = list(rec.take_profit_levels) + [None, None]
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            """
            INSERT INTO recommendations (symbol, action, direction, confidence, entry_price, stop_loss,
                                         take_profit_1, take_profit_2, position_size, risk_level,
                                         reasoning_json, sources_json, opportunity_reason, urgency,
                                         execution_status, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rec.symbol,
                rec.action,
                rec.direction,
                rec.confidence,
                rec.entry_price,
                rec.stop_loss,
                levels[0],
                levels[1],
                rec.position_size_fraction,
                rec.risk_level,
                json.dumps(rec.reasoning),
                json.dumps(rec.sources),
                rec.opportunity_reason,
                rec.urgency,
                rec.execution_status,
                iso(rec.created_at),
                iso(rec.expires_at),
            ),
        )
        conn.commit()
        return int(cursor.lastrowid)


def _row_to_recommendation(row: sqlite3.Row) -> Recommendation:
    levels = [float(v) for v in (row["take_profit_1"], row["take_profit_2"]) if v is not None]
    return Recommendation(
        id=row["id"],
        symbol=row["symbol"],
        action=row["action"],
        direction=row["direction"],
        confidence=float(row["confidence"]),
        entry_price=row["entry_price"],
        stop_loss=row["stop_loss"],
        take_profit_levels=levels,
        position_size_fraction=float(row["position_size"] or 0.0),
        risk_level=row["risk_level"] or "MEDIUM",
        reasoning=json.loads(row["reasoning_json"] or "{}"),
        sources=json.loads(row["sources_json"] or "[]"),
        opportunity_reason=row["opportunity_reason"] or "",
        urgency=row["urgency"] or "low",
        execution_status=row["execution_status"],
        created_at=datetime.fromisoformat(row["created_at"]),
        expires_at=datetime.fromisoformat(row["expires_at"]),
    )


def active_recommendations(
    now: datetime | None = None,
    status: str | None = None,
    min_confidence: float = 0.0,
    db_path: Path | None = None,
) -> list[Recommendation]:
    """Recommendations whose expiry is still in the future."""
    query = "SELECT * FROM recommendations WHERE expires_at > ? AND confidence >= ?"
    params: list[object] = [iso(now or utc_now()), min_confidence]
    if status:
        query += " AND execution_status = ?"
        params.append(status)
    query += " ORDER BY confidence DESC, created_at DESC"

    with get_connection(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_recommendation(row) for row in rows]


def mark_recommendation_status(recommendation_id: int, status: str, db_path: Path | None = None) -> None:
    with get_connection(db_path) as conn:
        conn.execute(
            "UPDATE recommendations SET execution_status = ? WHERE id = ?",
            (status, recommendation_id),
        )
        conn.commit()


# ── Discovery ─────────────────────────────────────────────────────


def store_candidates(candidates: list[Candidate], profile: str, db_path: Path | None = None) -> None:
    if not candidates:
        return

    rows = [
        (
            c.symbol,
            c.snapshot.name,
            profile,
            c.snapshot.price,
            c.snapshot.market_cap,
            c.snapshot.volume_24h,
            c.snapshot.price_change_24h,
            c.snapshot.price_change_7d,
            c.volume_score,
            c.momentum_score,
            c.sentiment_score,
            c.composite_score,
            iso(c.discovered_at),
        )
        for c in candidates
    ]

    with get_connection(db_path) as conn:
        conn.executemany(
            """
            INSERT INTO discovered_candidates (symbol, name, profile, price, market_cap, volume_24h,
                                               price_change_24h, price_change_7d, volume_score,
                                               momentum_score, sentiment_score, composite_score,
                                               discovered_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(symbol) DO UPDATE SET
                name = excluded.name,
                profile = excluded.profile,
                price = excluded.price,
                market_cap = excluded.market_cap,
                volume_24h = excluded.volume_24h,
                price_change_24h = excluded.price_change_24h,
                price_change_7d = excluded.price_change_7d,
                volume_score = excluded.volume_score,
                momentum_score = excluded.momentum_score,
                sentiment_score = excluded.sentiment_score,
                composite_score = excluded.composite_score,
                discovered_at = excluded.discovered_at
            """,
            rows,
        )
        conn.commit()


def latest_candidates(since: datetime, limit: int = 20, db_path: Path | None = None) -> list[Candidate]:
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """
            SELECT * FROM discovered_candidates
            WHERE discovered_at >= ?
            ORDER BY composite_score DESC, volume_24h DESC, symbol ASC
            LIMIT ?
            """,
            (iso(since), limit),
        ).fetchall()

    return [
        Candidate(
            symbol=row["symbol"],
            snapshot=MarketSnapshot(
                symbol=row["symbol"],
                name=row["name"] or "",
                price=float(row["price"] or 0.0),
                volume_24h=float(row["volume_24h"] or 0.0),
                price_change_24h=float(row["price_change_24h"] or 0.0),
                price_change_7d=float(row["price_change_7d"] or 0.0),
                sentiment_score=float(row["sentiment_score"] or 0.0),
                market_cap=float(row["market_cap"] or 0.0),
            ),
            volume_score=float(row["volume_score"]),
            momentum_score=float(row["momentum_score"]),
            sentiment_score=float(row["sentiment_score"]),
            composite_score=float(row["composite_score"]),
            discovered_at=datetime.fromisoformat(row["discovered_at"]),
        )
        for row in rows
    ]


# ── System events ─────────────────────────────────────────────────


def persist_system_event(
    event_type: str,
    message: str,
    metadata: dict | None = None,
    db_path: Path | None = None,
) -> None:
    with get_connection(db_path) as conn:
        conn.execute(
            "INSERT INTO system_events (event_type, message, metadata_json, created_at) VALUES (?, ?, ?, ?)",
            (event_type, message, json.dumps(metadata or {}, default=str), iso(utc_now())),
        )
        conn.commit()


def recent_events(limit: int = 50, db_path: Path | None = None) -> list[dict]:
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT event_type, message, metadata_json, created_at FROM system_events ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
    return [
        {
            "event_type": row["event_type"],
            "message": row["message"],
            "metadata": json.loads(row["metadata_json"] or "{}"),
            "created_at": row["created_at"],
        }
        for row in rows
    ]
