from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timezone
from decimal import Decimal
from typing import Iterable

from deriverse_journal.instruments import InstrumentRegistry
from deriverse_journal.metrics.summary import HUNDRED, win_rate
from deriverse_journal.models import MARKET_PERP, MARKET_SPOT, ZERO, Fill

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass(frozen=True)
class InstrumentFees:
    instrument_id: int
    symbol: str
    fees: Decimal
    percentage: Decimal


@dataclass(frozen=True)
class FeeComposition:
    spot_fees: Decimal = ZERO
    perp_fees: Decimal = ZERO
    unknown_fees: Decimal = ZERO
    total_fees: Decimal = ZERO
    by_instrument: list[InstrumentFees] = field(default_factory=list)


@dataclass(frozen=True)
class SessionRow:
    date: str
    trades: int
    pnl: Decimal
    win_rate: Decimal


@dataclass(frozen=True)
class SessionPerformance:
    total_sessions: int = 0
    profitable_sessions: int = 0
    losing_sessions: int = 0
    avg_pnl_per_session: Decimal = ZERO
    best_session: SessionRow | None = None
    worst_session: SessionRow | None = None
    sessions: list[SessionRow] = field(default_factory=list)


@dataclass(frozen=True)
class BucketRow:
    label: str
    trades: int
    pnl: Decimal
    avg_pnl: Decimal


@dataclass(frozen=True)
class CalendarBreakdown:
    by_hour: list[BucketRow] = field(default_factory=list)
    by_weekday: list[BucketRow] = field(default_factory=list)
    by_month: list[BucketRow] = field(default_factory=list)


def compute_fee_composition(
    fills: Iterable[Fill], registry: InstrumentRegistry | None = None
) -> FeeComposition:
    registry = registry or InstrumentRegistry()
    spot = ZERO
    perp = ZERO
    unknown = ZERO
    by_instrument: dict[int, Decimal] = defaultdict(lambda: ZERO)
    for fill in fills:
        fee = abs(fill.fee_amount)
        if fill.market_kind == MARKET_SPOT:
            spot += fee
        elif fill.market_kind == MARKET_PERP:
            perp += fee
        else:
            unknown += fee
        by_instrument[fill.instrument_id] += fee

    total = spot + perp + unknown
    rows = [
        InstrumentFees(
            instrument_id=instrument_id,
            symbol=registry.resolve_symbol(instrument_id),
            fees=fees,
            percentage=fees * HUNDRED / total if total > 0 else ZERO,
        )
        for instrument_id, fees in by_instrument.items()
    ]
    rows.sort(key=lambda row: (-row.fees, row.instrument_id))
    return FeeComposition(
        spot_fees=spot,
        perp_fees=perp,
        unknown_fees=unknown,
        total_fees=total,
        by_instrument=rows,
    )


def compute_session_performance(fills: Iterable[Fill]) -> SessionPerformance:
    days: dict[str, list[Fill]] = {}
    for fill in fills:
        day = fill.executed_at.astimezone(timezone.utc).date().isoformat()
        days.setdefault(day, []).append(fill)
    if not days:
        return SessionPerformance()

    sessions: list[SessionRow] = []
    for day, items in sorted(days.items()):
        wins = sum(1 for fill in items if fill.realized_pnl > 0)
        losses = sum(1 for fill in items if fill.realized_pnl < 0)
        sessions.append(
            SessionRow(
                date=day,
                trades=len(items),
                pnl=sum((fill.realized_pnl for fill in items), ZERO),
                win_rate=win_rate(wins, losses),
            )
        )

    total_pnl = sum((row.pnl for row in sessions), ZERO)
    # max/min keep the earliest day on ties since rows are date-sorted.
    return SessionPerformance(
        total_sessions=len(sessions),
        profitable_sessions=sum(1 for row in sessions if row.pnl > 0),
        losing_sessions=sum(1 for row in sessions if row.pnl < 0),
        avg_pnl_per_session=total_pnl / len(sessions),
        best_session=max(sessions, key=lambda row: row.pnl),
        worst_session=min(sessions, key=lambda row: row.pnl),
        sessions=sessions,
    )


def compute_calendar_breakdown(fills: Iterable[Fill]) -> CalendarBreakdown:
    hourly: dict[int, list[Decimal]] = {hour: [] for hour in range(24)}
    weekday: dict[int, list[Decimal]] = {day: [] for day in range(7)}
    monthly: dict[str, list[Decimal]] = {}
    seen = False
    for fill in fills:
        seen = True
        moment = fill.executed_at.astimezone(timezone.utc)
        hourly[moment.hour].append(fill.realized_pnl)
        weekday[moment.weekday()].append(fill.realized_pnl)
        monthly.setdefault(moment.strftime("%Y-%m"), []).append(fill.realized_pnl)
    if not seen:
        return CalendarBreakdown()

    return CalendarBreakdown(
        by_hour=[_bucket_row(f"{hour:02d}:00", values) for hour, values in hourly.items()],
        by_weekday=[_bucket_row(WEEKDAY_NAMES[day], values) for day, values in weekday.items()],
        by_month=[_bucket_row(month, values) for month, values in sorted(monthly.items())],
    )


def _bucket_row(label: str, values: list[Decimal]) -> BucketRow:
    total = sum(values, ZERO)
    return BucketRow(
        label=label,
        trades=len(values),
        pnl=total,
        avg_pnl=total / len(values) if values else ZERO,
    )
