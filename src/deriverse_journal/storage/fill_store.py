from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol

from deriverse_journal.errors import UpstreamUnavailable
from deriverse_journal.models import AnalyticsFilters, Fill
from deriverse_journal.storage import sqlite_reader, sqlite_store


class FillStore(Protocol):
    def upsert(self, fills: Iterable[Fill]) -> int:
        ...

    def query(self, wallet_id: str, filters: AnalyticsFilters | None = None) -> list[Fill]:
        ...

    def update_realized_pnl(self, fills: Iterable[Fill]) -> int:
        ...

    def record_sync_state(
        self,
        wallet_id: str,
        status: str,
        *,
        total_fills: int | None = None,
        last_signature: str | None = None,
        error_message: str | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        ...

    def sync_state(self, wallet_id: str) -> dict[str, Any] | None:
        ...


class SqliteFillStore:
    """Fill store over one SQLite file; a connection is opened per operation.

    Any SQLite failure (locked, read-only, I/O) surfaces as UpstreamUnavailable.
    """

    def __init__(self, db_path: Path, timeout_seconds: float = 5.0) -> None:
        self.db_path = db_path
        self.timeout_seconds = timeout_seconds
        with self._session() as conn:
            sqlite_store.init_db(conn)

    def upsert(self, fills: Iterable[Fill]) -> int:
        with self._session() as conn:
            return sqlite_store.insert_fills(conn, fills)

    def query(self, wallet_id: str, filters: AnalyticsFilters | None = None) -> list[Fill]:
        """Stored fills in chronological order.

        ``filters`` narrows by instrument id or stored symbol label and by UTC day.
        Realized P&L on the rows is whatever was last persisted.
        """
        with self._session(readonly=True) as conn:
            return sqlite_reader.load_fills(conn, wallet_id=wallet_id, filters=filters)

    def update_realized_pnl(self, fills: Iterable[Fill]) -> int:
        with self._session() as conn:
            return sqlite_store.update_realized_pnl(conn, fills)

    def record_sync_state(
        self,
        wallet_id: str,
        status: str,
        *,
        total_fills: int | None = None,
        last_signature: str | None = None,
        error_message: str | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        with self._session() as conn:
            sqlite_store.upsert_sync_state(
                conn,
                wallet_id=wallet_id,
                status=status,
                total_fills=total_fills,
                last_signature=last_signature,
                error_message=error_message,
                synced_at=synced_at,
            )

    def sync_state(self, wallet_id: str) -> dict[str, Any] | None:
        with self._session(readonly=True) as conn:
            return sqlite_reader.load_sync_state(conn, wallet_id=wallet_id)

    @contextmanager
    def _session(self, readonly: bool = False) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            connect = sqlite_reader.connect if readonly else sqlite_store.connect
            conn = connect(self.db_path, timeout=self.timeout_seconds)
            yield conn
        except sqlite3.Error as exc:
            raise UpstreamUnavailable(f"SQLite store unavailable at {self.db_path}: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()
