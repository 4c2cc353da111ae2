from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from deriverse_journal.instruments import InstrumentRegistry, base_symbol
from deriverse_journal.models import Fill, fill_sort_key

PNL_PROFIT = "profit"
PNL_LOSS = "loss"
PNL_NEUTRAL = "neutral"

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


@dataclass(frozen=True)
class JournalRow:
    fill: Fill
    symbol: str
    base_symbol: str
    formatted_price: str
    formatted_quantity: str
    formatted_pnl: str
    formatted_fee: str
    formatted_date: str
    pnl_class: str


def format_journal(
    fills: Iterable[Fill],
    registry: InstrumentRegistry | None = None,
    limit: int | None = None,
) -> list[JournalRow]:
    """Display rows, newest first, optionally capped at ``limit``."""
    registry = registry or InstrumentRegistry()
    ordered = sorted(fills, key=fill_sort_key, reverse=True)
    if limit is not None:
        ordered = ordered[: max(0, limit)]
    return [format_journal_row(fill, registry) for fill in ordered]


def format_journal_row(fill: Fill, registry: InstrumentRegistry) -> JournalRow:
    symbol = fill.symbol or registry.resolve_symbol(fill.instrument_id)
    return JournalRow(
        fill=fill,
        symbol=symbol,
        base_symbol=base_symbol(symbol),
        formatted_price=format_usd(fill.price),
        formatted_quantity=_fixed(fill.quantity, 4),
        formatted_pnl=format_signed_usd(fill.realized_pnl),
        formatted_fee=f"${_fixed(abs(fill.fee_amount), 6)}",
        formatted_date=format_timestamp(fill),
        pnl_class=pnl_class(fill.realized_pnl),
    )


def format_usd(value: Decimal) -> str:
    return f"${_quantize(value, 2):,.2f}"


def format_signed_usd(value: Decimal) -> str:
    rounded = _quantize(value, 2)
    if rounded < 0:
        return f"-${-rounded:,.2f}"
    return f"+${abs(rounded):,.2f}"


def format_timestamp(fill: Fill) -> str:
    moment = fill.executed_at.astimezone(timezone.utc)
    return f"{_MONTHS[moment.month - 1]} {moment.day:02d}, {moment:%H:%M:%S}"


def pnl_class(value: Decimal) -> str:
    if value > 0:
        return PNL_PROFIT
    if value < 0:
        return PNL_LOSS
    return PNL_NEUTRAL


def _fixed(value: Decimal, places: int) -> str:
    return f"{_quantize(value, places):.{places}f}"


def _quantize(value: Decimal, places: int) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
