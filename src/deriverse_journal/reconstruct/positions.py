from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Iterable

from deriverse_journal.models import SIDE_BUY, SIDE_SELL, ZERO, Fill, fill_sort_key, to_decimal

LEDGER_PRECISION = 34


@dataclass
class PositionState:
    instrument_id: int
    net_size: Decimal = ZERO
    avg_entry_price: Decimal = ZERO

    @property
    def is_flat(self) -> bool:
        return self.net_size == 0

    @property
    def direction(self) -> str | None:
        if self.net_size > 0:
            return "LONG"
        if self.net_size < 0:
            return "SHORT"
        return None


class PositionLedger:
    """Average-cost position book, one state per instrument."""

    def __init__(self) -> None:
        self._states: dict[int, PositionState] = {}

    @property
    def positions(self) -> dict[int, PositionState]:
        return dict(self._states)

    def state_for(self, instrument_id: int) -> PositionState:
        state = self._states.get(instrument_id)
        if state is None:
            state = PositionState(instrument_id=instrument_id)
            self._states[instrument_id] = state
        return state

    def apply(self, fill: Fill) -> Decimal:
        """Apply one fill and return the P&L it realizes."""
        price = to_decimal(fill.price)
        size = abs(to_decimal(fill.quantity))
        if size == 0 or fill.side not in (SIDE_BUY, SIDE_SELL):
            return ZERO
        state = self.state_for(fill.instrument_id)
        with localcontext() as ctx:
            ctx.prec = LEDGER_PRECISION
            if fill.side == SIDE_BUY:
                return _apply_buy(state, price, size)
            return _apply_sell(state, price, size)


def enrich_fills(fills: Iterable[Fill]) -> list[Fill]:
    """Recompute realized P&L for a full history, returned in ascending time order."""
    ordered = sorted(fills, key=fill_sort_key)
    ledger = PositionLedger()
    return [dataclasses.replace(fill, realized_pnl=ledger.apply(fill)) for fill in ordered]


def final_positions(fills: Iterable[Fill]) -> dict[int, PositionState]:
    ledger = PositionLedger()
    for fill in sorted(fills, key=fill_sort_key):
        ledger.apply(fill)
    return ledger.positions


def _apply_buy(state: PositionState, price: Decimal, size: Decimal) -> Decimal:
    if state.net_size < 0:
        closed = min(-state.net_size, size)
        pnl = (state.avg_entry_price - price) * closed
        state.net_size += size
        if state.net_size > 0:
            state.avg_entry_price = price
        elif state.net_size == 0:
            state.avg_entry_price = ZERO
        return pnl
    total_value = state.net_size * state.avg_entry_price + size * price
    state.net_size += size
    state.avg_entry_price = total_value / state.net_size
    return ZERO


def _apply_sell(state: PositionState, price: Decimal, size: Decimal) -> Decimal:
    if state.net_size > 0:
        closed = min(state.net_size, size)
        pnl = (price - state.avg_entry_price) * closed
        state.net_size -= size
        if state.net_size < 0:
            state.avg_entry_price = price
        elif state.net_size == 0:
            state.avg_entry_price = ZERO
        return pnl
    total_value = -state.net_size * state.avg_entry_price + size * price
    state.net_size -= size
    state.avg_entry_price = total_value / -state.net_size
    return ZERO
