from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Union

SIDE_BUY = "BUY"
SIDE_SELL = "SELL"

MARKET_SPOT = "SPOT"
MARKET_PERP = "PERP"
MARKET_UNKNOWN = "UNKNOWN"

ORDER_TYPES = {
    0: "LIMIT",
    1: "MARKET",
    2: "MARGIN_CALL",
    3: "FORCED_CLOSE",
}
ORDER_TYPE_UNKNOWN = "UNKNOWN"

CONFIDENCE_DECODED = "decoded"
CONFIDENCE_HEURISTIC = "heuristic"

ZERO = Decimal(0)


@dataclass(frozen=True)
class RawLogRecord:
    tag: int
    payload: bytes
    line_index: int


@dataclass(frozen=True)
class PlaceOrderEvent:
    market_kind: str
    instrument_id: int
    order_type: str
    is_ioc: bool
    leverage: int | None


@dataclass(frozen=True)
class FillOrderEvent:
    market_kind: str
    side: str
    price: Decimal
    quantity: Decimal
    raw_size: int
    fee: Decimal | None
    order_id: int
    client_id: int
    instrument_id: int | None


@dataclass(frozen=True)
class FeeEvent:
    market_kind: str
    amount: Decimal
    ref_payment: Decimal


DecodedEvent = Union[PlaceOrderEvent, FillOrderEvent, FeeEvent]


@dataclass(frozen=True)
class LedgerTransaction:
    signature: str
    block_time: datetime | None
    log_lines: list[str]
    slot: int | None = None


@dataclass(frozen=True)
class Fill:
    signature: str
    tx_signature: str
    wallet_id: str
    instrument_id: int
    symbol: str
    side: str
    market_kind: str
    price: Decimal
    quantity: Decimal
    fee_amount: Decimal
    executed_at: datetime
    realized_pnl: Decimal = ZERO
    fill_index: int = 0
    order_type: str = ORDER_TYPE_UNKNOWN
    is_ioc: bool = False
    leverage: int | None = None
    order_id: int | None = None
    client_id: int | None = None
    confidence: str = CONFIDENCE_DECODED
    raw: Mapping[str, Any] = field(default_factory=dict)

    @property
    def notional(self) -> Decimal:
        return self.price * self.quantity

    @property
    def is_buy(self) -> bool:
        return self.side == SIDE_BUY


@dataclass(frozen=True)
class AnalyticsFilters:
    symbol: str | None = None
    start_date: date | None = None
    end_date: date | None = None

    def accepts(self, fill: Fill, matches_symbol: Callable[[int, str], bool] | None = None) -> bool:
        day = fill.executed_at.astimezone(timezone.utc).date()
        if self.start_date is not None and day < self.start_date:
            return False
        if self.end_date is not None and day > self.end_date:
            return False
        if self.symbol:
            if matches_symbol is not None:
                return matches_symbol(fill.instrument_id, self.symbol)
            return self.symbol.strip().lower() in {str(fill.instrument_id), fill.symbol.lower()}
        return True


def fill_sort_key(fill: Fill) -> tuple:
    """Chronological order; fills from one transaction keep their log order."""
    return (fill.executed_at, fill.tx_signature, fill.fill_index, fill.signature)


def parse_decimal(value: Any) -> Decimal | None:
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def to_decimal(value: Any) -> Decimal:
    """Coerce stored or decoded numerics to Decimal, failing closed to zero."""
    result = parse_decimal(value)
    return ZERO if result is None else result


def normalize_side(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().upper()
    if text in {"BUY", "B", "BID", "LONG"}:
        return SIDE_BUY
    if text in {"SELL", "S", "ASK", "SHORT"}:
        return SIDE_SELL
    return None
