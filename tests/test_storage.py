from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from builders import make_fill
from deriverse_journal.errors import UpstreamUnavailable
from deriverse_journal.models import SIDE_BUY, SIDE_SELL, AnalyticsFilters
from deriverse_journal.storage import sqlite_reader, sqlite_store
from deriverse_journal.storage.fill_store import SqliteFillStore


def test_insert_is_idempotent_by_signature(tmp_path) -> None:
    store = SqliteFillStore(tmp_path / "journal.sqlite")
    fills = [make_fill(SIDE_BUY, minutes=0), make_fill(SIDE_SELL, minutes=1)]

    assert store.upsert(fills) == 2
    assert store.upsert(fills) == 0
    assert store.upsert(fills + [make_fill(SIDE_BUY, minutes=2)]) == 1
    assert len(store.query("wallet-1")) == 3


def test_round_trip_preserves_decimals_and_fields(tmp_path) -> None:
    store = SqliteFillStore(tmp_path / "journal.sqlite")
    fill = replace(
        make_fill(SIDE_SELL, "0.123456789", "101.000000001", fee="0.000001", pnl="-1.5"),
        order_id=2**64 - 1,
        client_id=7,
        leverage=10,
        is_ioc=True,
        order_type="MARKET",
        raw={"slot": 5},
    )
    store.upsert([fill])
    [loaded] = store.query("wallet-1")

    assert loaded == fill
    assert loaded.executed_at.tzinfo is not None


def test_query_is_scoped_to_wallet_and_ordered(tmp_path) -> None:
    store = SqliteFillStore(tmp_path / "journal.sqlite")
    store.upsert(
        [
            make_fill(SIDE_BUY, minutes=5),
            make_fill(SIDE_BUY, minutes=1),
            make_fill(SIDE_BUY, minutes=3, wallet_id="other"),
        ]
    )
    loaded = store.query("wallet-1")
    assert [fill.executed_at.minute for fill in loaded] == [4, 8]


def test_update_realized_pnl(tmp_path) -> None:
    store = SqliteFillStore(tmp_path / "journal.sqlite")
    fill = make_fill(SIDE_SELL, minutes=0)
    store.upsert([fill])
    store.update_realized_pnl([replace(fill, realized_pnl=Decimal("42.5"))])
    assert store.query("wallet-1")[0].realized_pnl == Decimal("42.5")


def test_malformed_stored_numeric_fails_closed(tmp_path) -> None:
    db_path = tmp_path / "journal.sqlite"
    store = SqliteFillStore(db_path)
    store.upsert([make_fill(SIDE_BUY, minutes=0, price="100")])
    conn = sqlite_store.connect(db_path)
    conn.execute("UPDATE fills SET price = 'not-a-number'")
    conn.commit()
    conn.close()

    [loaded] = store.query("wallet-1")
    assert loaded.price == Decimal(0)
    assert loaded.quantity == Decimal(1)


def test_sync_state_lifecycle(tmp_path) -> None:
    store = SqliteFillStore(tmp_path / "journal.sqlite")
    assert store.sync_state("w") is None

    store.record_sync_state("w", sqlite_store.SYNC_SYNCING)
    assert store.sync_state("w")["status"] == "SYNCING"

    synced_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    store.record_sync_state("w", sqlite_store.SYNC_IDLE, total_fills=3, last_signature="abc", synced_at=synced_at)
    store.record_sync_state("w", sqlite_store.SYNC_ERROR, error_message="boom")

    state = store.sync_state("w")
    assert state["status"] == "ERROR"
    assert state["error_message"] == "boom"
    assert state["total_fills"] == 3
    assert state["last_signature"] == "abc"
    assert state["last_synced_at"] == synced_at.isoformat()


def test_init_db_adds_missing_columns(tmp_path) -> None:
    conn = sqlite_store.connect(tmp_path / "journal.sqlite")
    sqlite_store.init_db(conn)
    sqlite_store.init_db(conn)
    columns = {row[1] for row in conn.execute("PRAGMA table_info(fills)").fetchall()}
    conn.close()
    assert {"confidence", "fill_index"} <= columns
    assert sqlite_reader.count_fills(sqlite_reader.connect(tmp_path / "journal.sqlite"), wallet_id="w") == 0


def test_locked_database_raises_upstream_unavailable(store) -> None:
    fill = make_fill(SIDE_BUY, minutes=0)
    blocker = sqlite3.connect(str(store.db_path))
    blocker.execute("BEGIN EXCLUSIVE")
    try:
        with pytest.raises(UpstreamUnavailable):
            store.upsert([fill])
        with pytest.raises(UpstreamUnavailable):
            store.query("wallet-1")
        with pytest.raises(UpstreamUnavailable):
            store.update_realized_pnl([fill])
        with pytest.raises(UpstreamUnavailable):
            store.record_sync_state("wallet-1", sqlite_store.SYNC_SYNCING)
    finally:
        blocker.rollback()
        blocker.close()

    assert store.upsert([fill]) == 1


def test_fills_from_one_transaction_are_ordered_by_index(store) -> None:
    when = datetime(2024, 1, 1, tzinfo=timezone.utc)
    fills = [
        make_fill(SIDE_BUY, executed_at=when, signature=f"TX:{index}", fill_index=index)
        for index in range(12)
    ]
    store.upsert(reversed(fills))
    assert [fill.fill_index for fill in store.query("wallet-1")] == list(range(12))


def test_query_filters_by_instrument_and_utc_day(store) -> None:
    store.upsert(
        [
            make_fill(SIDE_BUY, instrument_id=1, signature="a", executed_at=datetime(2024, 1, 1, 23, 59, tzinfo=timezone.utc)),
            make_fill(SIDE_BUY, instrument_id=2, signature="b", executed_at=datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)),
            make_fill(SIDE_BUY, instrument_id=1, signature="c", executed_at=datetime(2024, 1, 3, 8, 0, tzinfo=timezone.utc)),
        ]
    )

    def signatures(filters: AnalyticsFilters) -> list[str]:
        return [fill.signature for fill in store.query("wallet-1", filters)]

    assert signatures(AnalyticsFilters(symbol="1")) == ["a", "c"]
    assert signatures(AnalyticsFilters(symbol="instrument #2")) == ["b"]
    assert signatures(AnalyticsFilters(start_date=date(2024, 1, 2))) == ["b", "c"]
    assert signatures(AnalyticsFilters(end_date=date(2024, 1, 2))) == ["a", "b"]
    assert signatures(AnalyticsFilters(symbol="1", start_date=date(2024, 1, 2), end_date=date(2024, 1, 3))) == ["c"]
    assert signatures(AnalyticsFilters()) == ["a", "b", "c"]
