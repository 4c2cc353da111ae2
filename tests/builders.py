from __future__ import annotations

import base64
import struct
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from deriverse_journal.models import MARKET_SPOT, SIDE_BUY, Fill

SCALE = 1_000_000_000
BASE_TIME = datetime(2024, 1, 5, 14, 3, 22, tzinfo=timezone.utc)


def program_data(payload: bytes) -> str:
    return "Program data: " + base64.b64encode(payload).decode("ascii")


def fill_payload(
    *,
    tag: int = 11,
    sell: bool = False,
    client_id: int = 7,
    instrument_id: int = 2,
    price: str = "100",
    quantity: str = "1",
    rebates: str | None = None,
    order_id: int = 99,
) -> bytes:
    flags = 0x01 if sell else 0
    rebates_raw = 0
    if rebates is not None:
        flags |= 0x02
        rebates_raw = int(Decimal(rebates) * SCALE)
    return struct.pack(
        "<BIIIqqqQ",
        tag,
        flags,
        client_id,
        instrument_id,
        int(Decimal(price) * SCALE),
        int(Decimal(quantity) * SCALE),
        rebates_raw,
        order_id,
    )


def place_payload(
    *, tag: int = 10, order_type: int = 0, ioc: bool = False, leverage: int = 0, instrument_id: int = 1
) -> bytes:
    return struct.pack("<BBBBI", tag, order_type, 1 if ioc else 0, leverage, instrument_id)


def fee_payload(*, tag: int = 15, fees: str = "0.5", ref_payment: str = "0") -> bytes:
    return struct.pack("<Bqq", tag, int(Decimal(fees) * SCALE), int(Decimal(ref_payment) * SCALE))


def make_fill(
    side: str = SIDE_BUY,
    quantity: str = "1",
    price: str = "100",
    *,
    minutes: int = 0,
    instrument_id: int = 1,
    pnl: str = "0",
    fee: str = "0",
    market_kind: str = MARKET_SPOT,
    signature: str | None = None,
    wallet_id: str = "wallet-1",
    executed_at: datetime | None = None,
    fill_index: int = 0,
) -> Fill:
    when = executed_at or BASE_TIME + timedelta(minutes=minutes)
    sig = signature or f"sig-{minutes:05d}-{instrument_id}-{side}"
    return Fill(
        signature=sig,
        tx_signature=sig.split(":")[0],
        wallet_id=wallet_id,
        instrument_id=instrument_id,
        symbol=f"Instrument #{instrument_id}",
        side=side,
        market_kind=market_kind,
        price=Decimal(price),
        quantity=Decimal(quantity),
        fee_amount=Decimal(fee),
        executed_at=when,
        realized_pnl=Decimal(pnl),
        fill_index=fill_index,
    )
