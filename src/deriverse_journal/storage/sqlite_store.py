from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from deriverse_journal.models import Fill

SYNC_IDLE = "IDLE"
SYNC_SYNCING = "SYNCING"
SYNC_ERROR = "ERROR"


def connect(db_path: Path, timeout: float = 5.0) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS fills (
            signature TEXT PRIMARY KEY,
            tx_signature TEXT NOT NULL,
            wallet_id TEXT NOT NULL,
            instrument_id INTEGER NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            market_kind TEXT NOT NULL,
            price TEXT NOT NULL,
            quantity TEXT NOT NULL,
            fee_amount TEXT NOT NULL,
            realized_pnl TEXT NOT NULL DEFAULT '0',
            executed_at TEXT NOT NULL,
            order_type TEXT,
            is_ioc INTEGER NOT NULL DEFAULT 0,
            leverage INTEGER,
            order_id TEXT,
            client_id TEXT,
            raw_json TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_fills_wallet_time ON fills (wallet_id, executed_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_state (
            wallet_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            total_fills INTEGER NOT NULL DEFAULT 0,
            last_signature TEXT,
            last_synced_at TEXT,
            error_message TEXT,
            updated_at TEXT NOT NULL
        )
        """
    )
    _ensure_columns(conn)
    conn.commit()


def _ensure_columns(conn: sqlite3.Connection) -> None:
    _ensure_column(conn, "fills", "confidence", "TEXT NOT NULL DEFAULT 'decoded'")
    _ensure_column(conn, "fills", "fill_index", "INTEGER NOT NULL DEFAULT 0")


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, col_type: str) -> None:
    existing = {
        row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
    }
    if column in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")


def insert_fills(conn: sqlite3.Connection, fills: Iterable[Fill]) -> int:
    """Insert new fills; rows whose signature already exists are left untouched.

    Returns the number of rows actually inserted.
    """
    rows = [_fill_row(fill) for fill in fills]
    if not rows:
        return 0
    before = conn.total_changes
    conn.executemany(
        """
        INSERT INTO fills (
            signature, tx_signature, wallet_id, instrument_id, symbol, side, market_kind,
            price, quantity, fee_amount, realized_pnl, executed_at, order_type, is_ioc,
            leverage, order_id, client_id, confidence, fill_index, raw_json
        )
        VALUES (
            :signature, :tx_signature, :wallet_id, :instrument_id, :symbol, :side, :market_kind,
            :price, :quantity, :fee_amount, :realized_pnl, :executed_at, :order_type, :is_ioc,
            :leverage, :order_id, :client_id, :confidence, :fill_index, :raw_json
        )
        ON CONFLICT(signature) DO NOTHING
        """,
        rows,
    )
    conn.commit()
    return conn.total_changes - before


def update_realized_pnl(conn: sqlite3.Connection, fills: Iterable[Fill]) -> int:
    rows = [(str(fill.realized_pnl), fill.signature) for fill in fills]
    conn.executemany("UPDATE fills SET realized_pnl = ? WHERE signature = ?", rows)
    conn.commit()
    return len(rows)


def upsert_sync_state(
    conn: sqlite3.Connection,
    *,
    wallet_id: str,
    status: str,
    total_fills: int | None = None,
    last_signature: str | None = None,
    error_message: str | None = None,
    synced_at: datetime | None = None,
) -> None:
    now = datetime.now(timezone.utc).isoformat()
    conn.execute(
        """
        INSERT INTO sync_state (
            wallet_id, status, total_fills, last_signature, last_synced_at, error_message, updated_at
        )
        VALUES (?, ?, COALESCE(?, 0), ?, ?, ?, ?)
        ON CONFLICT(wallet_id) DO UPDATE SET
            status=excluded.status,
            total_fills=COALESCE(?, sync_state.total_fills),
            last_signature=COALESCE(excluded.last_signature, sync_state.last_signature),
            last_synced_at=COALESCE(excluded.last_synced_at, sync_state.last_synced_at),
            error_message=excluded.error_message,
            updated_at=excluded.updated_at
        """,
        (
            wallet_id,
            status,
            total_fills,
            last_signature,
            synced_at.isoformat() if synced_at else None,
            error_message,
            now,
            total_fills,
        ),
    )
    conn.commit()


def _fill_row(fill: Fill) -> dict[str, object]:
    return {
        "signature": fill.signature,
        "tx_signature": fill.tx_signature,
        "wallet_id": fill.wallet_id,
        "instrument_id": int(fill.instrument_id),
        "symbol": fill.symbol,
        "side": fill.side,
        "market_kind": fill.market_kind,
        "price": str(fill.price),
        "quantity": str(fill.quantity),
        "fee_amount": str(fill.fee_amount),
        "realized_pnl": str(fill.realized_pnl),
        "executed_at": _iso_utc(fill.executed_at),
        "order_type": fill.order_type,
        "is_ioc": 1 if fill.is_ioc else 0,
        "leverage": fill.leverage,
        "order_id": _text_or_none(fill.order_id),
        "client_id": _text_or_none(fill.client_id),
        "confidence": fill.confidence,
        "fill_index": int(fill.fill_index),
        "raw_json": _json_dump(fill.raw),
    }


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _json_dump(value: object) -> str:
    if value is None:
        return "{}"
    if hasattr(value, "__dataclass_fields__"):
        value = asdict(value)
    return json.dumps(value, sort_keys=True, default=str)


def _text_or_none(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
