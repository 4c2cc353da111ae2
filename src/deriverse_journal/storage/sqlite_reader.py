from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from deriverse_journal.models import (
    ORDER_TYPE_UNKNOWN,
    ZERO,
    AnalyticsFilters,
    Fill,
    normalize_side,
    parse_decimal,
)

logger = logging.getLogger(__name__)

_DECIMAL_COLUMNS = ("price", "quantity", "fee_amount", "realized_pnl")


def connect(db_path: Path, timeout: float = 5.0) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    return conn


def load_fills(
    conn: sqlite3.Connection,
    *,
    wallet_id: str,
    filters: AnalyticsFilters | None = None,
) -> list[Fill]:
    where = ["wallet_id = ?"]
    params: list[Any] = [wallet_id]
    if filters is not None:
        if filters.symbol and filters.symbol.strip():
            query = filters.symbol.strip().lower()
            where.append("(CAST(instrument_id AS TEXT) = ? OR lower(symbol) = ?)")
            params.extend([query, query])
        if filters.start_date is not None:
            where.append("executed_at >= ?")
            params.append(filters.start_date.isoformat())
        if filters.end_date is not None:
            where.append("executed_at < ?")
            params.append((filters.end_date + timedelta(days=1)).isoformat())
    rows = conn.execute(
        f"SELECT * FROM fills WHERE {' AND '.join(where)} "
        "ORDER BY executed_at, tx_signature, fill_index, signature",
        params,
    ).fetchall()
    fills: list[Fill] = []
    for row in rows:
        numbers = {column: _decimal_column(row, column) for column in _DECIMAL_COLUMNS}
        fills.append(
            Fill(
                signature=row["signature"],
                tx_signature=row["tx_signature"],
                wallet_id=row["wallet_id"],
                instrument_id=int(row["instrument_id"]),
                symbol=row["symbol"],
                side=normalize_side(row["side"]) or row["side"],
                market_kind=row["market_kind"],
                price=numbers["price"],
                quantity=numbers["quantity"],
                fee_amount=numbers["fee_amount"],
                realized_pnl=numbers["realized_pnl"],
                fill_index=int(row["fill_index"] or 0),
                executed_at=_parse_iso(row["executed_at"]),
                order_type=row["order_type"] or ORDER_TYPE_UNKNOWN,
                is_ioc=bool(row["is_ioc"]),
                leverage=row["leverage"],
                order_id=_int_or_none(row["order_id"]),
                client_id=_int_or_none(row["client_id"]),
                confidence=row["confidence"],
                raw=_maybe_json(row["raw_json"]),
            )
        )
    return fills


def load_sync_state(conn: sqlite3.Connection, *, wallet_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM sync_state WHERE wallet_id = ?", (wallet_id,)).fetchone()
    if row is None:
        return None
    return dict(row)


def count_fills(conn: sqlite3.Connection, *, wallet_id: str) -> int:
    row = conn.execute("SELECT COUNT(*) FROM fills WHERE wallet_id = ?", (wallet_id,)).fetchone()
    return int(row[0]) if row else 0


def _decimal_column(row: sqlite3.Row, column: str) -> Decimal:
    raw = row[column]
    value = parse_decimal(raw)
    if value is None:
        logger.warning("Fill %s: unparsable %s %r treated as 0", row["signature"], column, raw)
        return ZERO
    return value


def _int_or_none(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _maybe_json(value: str | None) -> Any:
    if value is None:
        return {}
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return {}


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
