from __future__ import annotations

import pytest

from deriverse_journal.storage.fill_store import SqliteFillStore


class FakeClock:
    def __init__(self, now_ms: int = 1_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> SqliteFillStore:
    return SqliteFillStore(tmp_path / "journal.sqlite", timeout_seconds=0.05)
