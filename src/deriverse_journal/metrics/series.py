from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable

from deriverse_journal.models import ZERO, Fill, fill_sort_key


@dataclass(frozen=True)
class PnlPoint:
    timestamp: datetime
    date: str
    trade_pnl: Decimal
    cumulative_pnl: Decimal


@dataclass(frozen=True)
class DrawdownPoint:
    timestamp: datetime
    date: str
    drawdown: Decimal
    peak: Decimal


@dataclass(frozen=True)
class DrawdownSummary:
    max_drawdown: Decimal = ZERO
    current_drawdown: Decimal = ZERO
    series: list[DrawdownPoint] = field(default_factory=list)


def compute_pnl_series(fills: Iterable[Fill]) -> list[PnlPoint]:
    cumulative = ZERO
    points: list[PnlPoint] = []
    for fill in _chronological(fills):
        cumulative += fill.realized_pnl
        points.append(
            PnlPoint(
                timestamp=fill.executed_at,
                date=fill.executed_at.astimezone(timezone.utc).date().isoformat(),
                trade_pnl=fill.realized_pnl,
                cumulative_pnl=cumulative,
            )
        )
    return points


def compute_drawdown(fills: Iterable[Fill]) -> DrawdownSummary:
    """Drawdown from the running peak of cumulative P&L.

    Series values are reported as non-positive numbers for overlaying on the
    P&L curve; ``max_drawdown`` and ``current_drawdown`` are magnitudes.
    """
    peak = ZERO
    cumulative = ZERO
    max_drawdown = ZERO
    series: list[DrawdownPoint] = []
    for fill in _chronological(fills):
        cumulative += fill.realized_pnl
        if cumulative > peak:
            peak = cumulative
        drawdown = peak - cumulative
        if drawdown > max_drawdown:
            max_drawdown = drawdown
        series.append(
            DrawdownPoint(
                timestamp=fill.executed_at,
                date=fill.executed_at.astimezone(timezone.utc).date().isoformat(),
                drawdown=-drawdown,
                peak=peak,
            )
        )
    return DrawdownSummary(
        max_drawdown=max_drawdown,
        current_drawdown=peak - cumulative,
        series=series,
    )


def _chronological(fills: Iterable[Fill]) -> list[Fill]:
    return sorted(fills, key=fill_sort_key)
