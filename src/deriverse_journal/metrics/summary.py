from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from deriverse_journal.models import SIDE_BUY, SIDE_SELL, ZERO, Fill, fill_sort_key

HUNDRED = Decimal(100)

BIAS_BULLISH = "BULLISH"
BIAS_BEARISH = "BEARISH"
BIAS_NEUTRAL = "NEUTRAL"

BULLISH_RATIO = Decimal("1.2")
BEARISH_RATIO = Decimal("0.8")


@dataclass(frozen=True)
class CoreMetrics:
    total_pnl: Decimal
    total_volume: Decimal
    total_fees: Decimal
    net_pnl: Decimal
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: Decimal


@dataclass(frozen=True)
class LongShortMetrics:
    long_trades: int
    short_trades: int
    long_volume: Decimal
    short_volume: Decimal
    ratio: Decimal
    long_pct: Decimal
    short_pct: Decimal
    bias: str


@dataclass(frozen=True)
class RiskMetrics:
    largest_gain: Decimal
    largest_loss: Decimal
    avg_win: Decimal
    avg_loss: Decimal
    profit_factor: Decimal
    avg_holding_seconds: float


def compute_core_metrics(fills: Iterable[Fill]) -> CoreMetrics:
    fill_list = list(fills)
    total_pnl = sum((fill.realized_pnl for fill in fill_list), ZERO)
    total_volume = sum((fill.notional for fill in fill_list), ZERO)
    total_fees = sum((fill.fee_amount for fill in fill_list), ZERO)
    wins = sum(1 for fill in fill_list if fill.realized_pnl > 0)
    losses = sum(1 for fill in fill_list if fill.realized_pnl < 0)
    return CoreMetrics(
        total_pnl=total_pnl,
        total_volume=total_volume,
        total_fees=total_fees,
        net_pnl=total_pnl - total_fees,
        total_trades=len(fill_list),
        winning_trades=wins,
        losing_trades=losses,
        win_rate=win_rate(wins, losses),
    )


def win_rate(wins: int, losses: int) -> Decimal:
    """Percentage of decided fills that were wins; break-even fills are excluded."""
    decided = wins + losses
    if not decided:
        return ZERO
    return Decimal(wins) * HUNDRED / Decimal(decided)


def compute_long_short(fills: Iterable[Fill]) -> LongShortMetrics:
    fill_list = list(fills)
    longs = [fill for fill in fill_list if fill.side == SIDE_BUY]
    shorts = [fill for fill in fill_list if fill.side == SIDE_SELL]
    total = len(longs) + len(shorts)
    if not total:
        return LongShortMetrics(0, 0, ZERO, ZERO, ZERO, ZERO, ZERO, BIAS_NEUTRAL)

    ratio = Decimal(len(longs)) / Decimal(len(shorts)) if shorts else Decimal(len(longs))
    bias = BIAS_NEUTRAL
    if ratio > BULLISH_RATIO:
        bias = BIAS_BULLISH
    elif ratio < BEARISH_RATIO:
        bias = BIAS_BEARISH
    return LongShortMetrics(
        long_trades=len(longs),
        short_trades=len(shorts),
        long_volume=sum((fill.notional for fill in longs), ZERO),
        short_volume=sum((fill.notional for fill in shorts), ZERO),
        ratio=ratio,
        long_pct=Decimal(len(longs)) * HUNDRED / Decimal(total),
        short_pct=Decimal(len(shorts)) * HUNDRED / Decimal(total),
        bias=bias,
    )


def compute_risk_metrics(fills: Iterable[Fill]) -> RiskMetrics:
    fill_list = list(fills)
    if not fill_list:
        return RiskMetrics(ZERO, ZERO, ZERO, ZERO, ZERO, 0.0)

    pnls = [fill.realized_pnl for fill in fill_list]
    wins = [pnl for pnl in pnls if pnl > 0]
    losses = [pnl for pnl in pnls if pnl < 0]
    total_wins = sum(wins, ZERO)
    total_losses = abs(sum(losses, ZERO))

    return RiskMetrics(
        largest_gain=max(pnls),
        largest_loss=min(pnls),
        avg_win=total_wins / len(wins) if wins else ZERO,
        avg_loss=total_losses / len(losses) if losses else ZERO,
        profit_factor=total_wins / total_losses if total_losses > 0 else ZERO,
        avg_holding_seconds=average_holding_seconds(fill_list),
    )


def average_holding_seconds(fills: Iterable[Fill]) -> float:
    """Pair each instrument's i-th buy with its i-th sell and average the gaps."""
    ordered = sorted(fills, key=fill_sort_key)
    by_instrument: dict[int, dict[str, list[Fill]]] = defaultdict(lambda: {SIDE_BUY: [], SIDE_SELL: []})
    for fill in ordered:
        if fill.side in (SIDE_BUY, SIDE_SELL):
            by_instrument[fill.instrument_id][fill.side].append(fill)

    total = 0.0
    pairs = 0
    for sides in by_instrument.values():
        for buy, sell in zip(sides[SIDE_BUY], sides[SIDE_SELL]):
            total += abs((sell.executed_at - buy.executed_at).total_seconds())
            pairs += 1
    return total / pairs if pairs else 0.0
