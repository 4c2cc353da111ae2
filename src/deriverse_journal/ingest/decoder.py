"""Binary event decoding for Deriverse program logs.

Each record arrives as a log line ``Program data: <base64>``. The first byte of
the decoded payload is the tag; the remaining bytes follow a fixed little-endian
layout per tag. Numeric fields are fixed-point integers scaled by
``DecoderScales``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import struct
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

from deriverse_journal.errors import DecodeError
from deriverse_journal.models import (
    MARKET_PERP,
    MARKET_SPOT,
    MARKET_UNKNOWN,
    ORDER_TYPE_UNKNOWN,
    ORDER_TYPES,
    SIDE_BUY,
    SIDE_SELL,
    DecodedEvent,
    FeeEvent,
    FillOrderEvent,
    PlaceOrderEvent,
    RawLogRecord,
)

logger = logging.getLogger(__name__)

PROGRAM_DATA_PREFIX = "Program data: "

TAG_SPOT_PLACE_ORDER = 10
TAG_SPOT_FILL_ORDER = 11
TAG_SPOT_FEES = 15
TAG_PERP_PLACE_ORDER = 18
TAG_PERP_FILL_ORDER = 19
TAG_PERP_FEES = 23

PLACE_ORDER_TAGS = {TAG_SPOT_PLACE_ORDER: MARKET_SPOT, TAG_PERP_PLACE_ORDER: MARKET_PERP}
FILL_ORDER_TAGS = {TAG_SPOT_FILL_ORDER: MARKET_SPOT, TAG_PERP_FILL_ORDER: MARKET_PERP}
FEE_TAGS = {TAG_SPOT_FEES: MARKET_SPOT, TAG_PERP_FEES: MARKET_PERP}

# tag, order_type, ioc, leverage, instrument_id
_PLACE_ORDER = struct.Struct("<BBBBI")
# tag, flags, client_id, instrument_id, price, quantity, rebates, order_id
_FILL_ORDER = struct.Struct("<BIIIqqqQ")
# tag, fees, ref_payment
_FEES = struct.Struct("<Bqq")

FLAG_SIDE_SELL = 0x01
FLAG_FEE_EMBEDDED = 0x02
INSTRUMENT_ABSENT = 0xFFFFFFFF

DEFAULT_SCALE = Decimal(1_000_000_000)

_HEURISTIC_TRIGGER = re.compile(r"taker\s+(buy|sell)", re.IGNORECASE)
_HEURISTIC_PRICE = re.compile(r"price[=:]\s*([\d.]+)", re.IGNORECASE)
_HEURISTIC_SIZE = re.compile(r"size[=:]\s*([\d.]+)", re.IGNORECASE)
_HEURISTIC_FEE = re.compile(r"fee[=:]\s*([\d.]+)", re.IGNORECASE)


@dataclass(frozen=True)
class DecoderScales:
    price: Decimal = DEFAULT_SCALE
    quantity: Decimal = DEFAULT_SCALE
    fee: Decimal = DEFAULT_SCALE

    def __post_init__(self) -> None:
        for name in ("price", "quantity", "fee"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Decoder scale '{name}' must be positive.")


@dataclass
class DecodeResult:
    events: list[DecodedEvent] = field(default_factory=list)
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def extract_payload(line: str, line_index: int = 0) -> RawLogRecord | None:
    """Return the binary record carried by a log line, or None for ordinary log text.

    Raises DecodeError when the line carries the program-data prefix but the
    payload is not valid base64 or is empty.
    """
    if not line.startswith(PROGRAM_DATA_PREFIX):
        return None
    encoded = line[len(PROGRAM_DATA_PREFIX):].strip()
    try:
        payload = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Invalid base64 payload on line {line_index}") from exc
    if not payload:
        raise DecodeError(f"Empty payload on line {line_index}")
    return RawLogRecord(tag=payload[0], payload=payload, line_index=line_index)


def decode_record(record: RawLogRecord, scales: DecoderScales | None = None) -> DecodedEvent:
    scales = scales or DecoderScales()
    if record.tag in FILL_ORDER_TAGS:
        return _decode_fill(record, FILL_ORDER_TAGS[record.tag], scales)
    if record.tag in PLACE_ORDER_TAGS:
        return _decode_place_order(record, PLACE_ORDER_TAGS[record.tag])
    if record.tag in FEE_TAGS:
        return _decode_fees(record, FEE_TAGS[record.tag], scales)
    raise DecodeError(f"Unrecognized tag {record.tag} on line {record.line_index}")


def decode_log_lines(lines: Iterable[str], scales: DecoderScales | None = None) -> DecodeResult:
    result = DecodeResult()
    for index, line in enumerate(lines):
        try:
            record = extract_payload(line, index)
            if record is None:
                continue
            result.events.append(decode_record(record, scales))
        except DecodeError as exc:
            result.skipped += 1
            result.errors.append(str(exc))
            logger.debug("Skipping log record: %s", exc)
    return result


def decode_text_fallback(lines: Iterable[str]) -> list[FillOrderEvent]:
    """Best-effort fills from plain-text log lines.

    Only meant for transactions that carry no decodable program-data record.
    Lines need a ``taker buy``/``taker sell`` marker plus positive price and size.
    """
    events: list[FillOrderEvent] = []
    for line in lines:
        if line.startswith(PROGRAM_DATA_PREFIX):
            continue
        trigger = _HEURISTIC_TRIGGER.search(line)
        if trigger is None:
            continue
        price = _match_decimal(_HEURISTIC_PRICE, line)
        size = _match_decimal(_HEURISTIC_SIZE, line)
        if price is None or size is None or price <= 0 or size <= 0:
            continue
        fee = _match_decimal(_HEURISTIC_FEE, line)
        events.append(
            FillOrderEvent(
                market_kind=MARKET_UNKNOWN,
                side=SIDE_BUY if trigger.group(1).lower() == "buy" else SIDE_SELL,
                price=price,
                quantity=size,
                raw_size=0,
                fee=fee if fee is not None else Decimal(0),
                order_id=0,
                client_id=0,
                instrument_id=None,
            )
        )
    return events


def order_type_label(code: int) -> str:
    return ORDER_TYPES.get(code, ORDER_TYPE_UNKNOWN)


def _decode_fill(record: RawLogRecord, market_kind: str, scales: DecoderScales) -> FillOrderEvent:
    _require_length(record, _FILL_ORDER.size)
    (_, flags, client_id, instrument_id, price_raw, qty_raw, rebates_raw, order_id) = (
        _FILL_ORDER.unpack_from(record.payload, 0)
    )
    fee = None
    if flags & FLAG_FEE_EMBEDDED:
        fee = -Decimal(rebates_raw) / scales.fee
    return FillOrderEvent(
        market_kind=market_kind,
        side=SIDE_SELL if flags & FLAG_SIDE_SELL else SIDE_BUY,
        price=abs(Decimal(price_raw)) / scales.price,
        quantity=abs(Decimal(qty_raw)) / scales.quantity,
        raw_size=qty_raw,
        fee=fee,
        order_id=order_id,
        client_id=client_id,
        instrument_id=None if instrument_id == INSTRUMENT_ABSENT else instrument_id,
    )


def _decode_place_order(record: RawLogRecord, market_kind: str) -> PlaceOrderEvent:
    _require_length(record, _PLACE_ORDER.size)
    _, order_type, ioc, leverage, instrument_id = _PLACE_ORDER.unpack_from(record.payload, 0)
    return PlaceOrderEvent(
        market_kind=market_kind,
        instrument_id=instrument_id,
        order_type=order_type_label(order_type),
        is_ioc=bool(ioc),
        leverage=leverage or None,
    )


def _decode_fees(record: RawLogRecord, market_kind: str, scales: DecoderScales) -> FeeEvent:
    _require_length(record, _FEES.size)
    _, fees_raw, ref_raw = _FEES.unpack_from(record.payload, 0)
    return FeeEvent(
        market_kind=market_kind,
        amount=Decimal(fees_raw) / scales.fee,
        ref_payment=Decimal(ref_raw) / scales.fee,
    )


def _require_length(record: RawLogRecord, size: int) -> None:
    if len(record.payload) < size:
        raise DecodeError(
            f"Truncated record for tag {record.tag} on line {record.line_index}: "
            f"{len(record.payload)} < {size} bytes"
        )


def _match_decimal(pattern: re.Pattern[str], line: str) -> Decimal | None:
    match = pattern.search(line)
    if match is None:
        return None
    try:
        return Decimal(match.group(1))
    except ArithmeticError:
        return None
