from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from builders import fill_payload, program_data
from deriverse_journal.errors import UpstreamUnavailable
from deriverse_journal.models import LedgerTransaction
from deriverse_journal.ratelimit import RateLimiter
from deriverse_journal.service import JournalService
from deriverse_journal.storage.fill_store import SqliteFillStore
from deriverse_journal.web.app import create_app

WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


class StaticReader:
    def __init__(self, transactions: list[LedgerTransaction], error: Exception | None = None) -> None:
        self.transactions = transactions
        self.error = error

    def list_transactions(self, wallet_id: str, limit: int | None = None) -> list[LedgerTransaction]:
        if self.error is not None:
            raise self.error
        return self.transactions


def _transactions() -> list[LedgerTransaction]:
    return [
        LedgerTransaction(
            signature="buy",
            block_time=datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
            log_lines=[program_data(fill_payload(instrument_id=1, price="100", quantity="2"))],
        ),
        LedgerTransaction(
            signature="sell",
            block_time=datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc),
            log_lines=[program_data(fill_payload(sell=True, instrument_id=1, price="100.5", quantity="2"))],
        ),
    ]


def _client(tmp_path, *, max_requests: int = 10, error: Exception | None = None) -> TestClient:
    service = JournalService(
        reader=StaticReader(_transactions(), error),
        store=SqliteFillStore(tmp_path / "journal.sqlite"),
        limiter=RateLimiter(max_requests=max_requests, window_ms=300_000),
    )
    return TestClient(create_app(service))


def test_sync_then_analytics(tmp_path) -> None:
    client = _client(tmp_path)

    response = client.post("/api/sync", json={"wallet": WALLET})
    assert response.status_code == 200
    assert response.json() == {
        "wallet": WALLET,
        "inserted": 2,
        "decoded": 2,
        "skipped": 0,
        "transactions": 2,
        "total_fills": 2,
    }

    analytics = client.get(f"/api/analytics/{WALLET}").json()
    assert analytics["wallet"] == WALLET
    assert analytics["core"]["total_pnl"] == "1"
    assert analytics["core"]["total_volume"] == "401"
    assert analytics["long_short"]["bias"] == "NEUTRAL"
    assert analytics["journal"][0]["formatted_pnl"] == "+$1.00"
    assert analytics["journal"][0]["symbol"] == "SOL/USDC"
    assert analytics["positions"]["1"]["net_size"] == "0"

    state = client.get(f"/api/sync-state/{WALLET}").json()
    assert state["status"] == "IDLE"


def test_analytics_date_filter_and_bad_date(tmp_path) -> None:
    client = _client(tmp_path)
    client.post("/api/sync", params={"wallet": WALLET})

    filtered = client.get(f"/api/analytics/{WALLET}", params={"start_date": "2024-01-02"}).json()
    assert filtered["core"]["total_trades"] == 1
    assert filtered["filters"]["start_date"] == "2024-01-02"

    bad = client.get(f"/api/analytics/{WALLET}", params={"end_date": "yesterday"})
    assert bad.status_code == 400


def test_sync_requires_wallet(tmp_path) -> None:
    client = _client(tmp_path)
    assert client.post("/api/sync", json={}).status_code == 400
    assert client.post("/api/sync", content=b"not json").status_code == 400


def test_sync_rate_limit_returns_429_with_retry_after(tmp_path) -> None:
    client = _client(tmp_path, max_requests=1)
    assert client.post("/api/sync", json={"wallet": WALLET}).status_code == 200

    limited = client.post("/api/sync", json={"wallet": WALLET})
    assert limited.status_code == 429
    assert 0 < int(limited.headers["retry-after"]) <= 300


def test_upstream_failure_maps_to_502(tmp_path) -> None:
    client = _client(tmp_path, error=UpstreamUnavailable("rpc down"))
    response = client.post("/api/sync", json={"wallet": WALLET})
    assert response.status_code == 502
    assert client.get(f"/api/sync-state/{WALLET}").json()["status"] == "ERROR"


def test_sync_state_unknown_wallet_is_404(tmp_path) -> None:
    client = _client(tmp_path)
    assert client.get("/api/sync-state/nobody").status_code == 404


def test_locked_store_maps_to_502(tmp_path) -> None:
    db_path = tmp_path / "journal.sqlite"
    service = JournalService(
        reader=StaticReader(_transactions()),
        store=SqliteFillStore(db_path, timeout_seconds=0.05),
    )
    client = TestClient(create_app(service))
    blocker = sqlite3.connect(str(db_path))
    blocker.execute("BEGIN EXCLUSIVE")
    try:
        assert client.post("/api/sync", json={"wallet": WALLET}).status_code == 502
        assert client.get(f"/api/analytics/{WALLET}").status_code == 502
        assert client.get(f"/api/sync-state/{WALLET}").status_code == 502
    finally:
        blocker.rollback()
        blocker.close()
