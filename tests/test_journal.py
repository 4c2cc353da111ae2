from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

from builders import make_fill
from deriverse_journal.instruments import InstrumentRegistry, base_symbol
from deriverse_journal.metrics.journal import format_journal, format_signed_usd
from deriverse_journal.models import SIDE_BUY, SIDE_SELL


def test_journal_row_formatting() -> None:
    fill = make_fill(SIDE_SELL, "1.23456", "1234.567", pnl="12.345", fee="-0.0001234")
    fill = replace(fill, symbol="SOL/USDC")
    [row] = format_journal([fill], InstrumentRegistry())

    assert row.formatted_price == "$1,234.57"
    assert row.formatted_quantity == "1.2346"
    assert row.formatted_pnl == "+$12.35"
    assert row.formatted_fee == "$0.000123"
    assert row.formatted_date == "Jan 05, 14:03:22"
    assert row.pnl_class == "profit"
    assert row.base_symbol == "SOL"


def test_journal_loss_and_neutral_classes() -> None:
    loss, flat = format_journal(
        [make_fill(SIDE_SELL, minutes=1, pnl="-5"), make_fill(SIDE_BUY, minutes=0)],
    )
    assert (loss.formatted_pnl, loss.pnl_class) == ("-$5.00", "loss")
    assert (flat.formatted_pnl, flat.pnl_class) == ("+$0.00", "neutral")


def test_journal_is_newest_first_and_limited() -> None:
    fills = [make_fill(SIDE_BUY, minutes=index) for index in range(5)]
    rows = format_journal(fills, limit=3)
    assert [row.fill.signature for row in rows] == [fills[4].signature, fills[3].signature, fills[2].signature]


def test_signed_usd_uses_thousands_separator() -> None:
    assert format_signed_usd(Decimal("-12345.678")) == "-$12,345.68"


def test_base_symbol_extraction() -> None:
    assert base_symbol("SOL/USDC") == "SOL"
    assert base_symbol("BTC-PERP") == "BTC"
    assert base_symbol("Instrument #9") == "Instrument #9"
    assert base_symbol("/USDC") == "/USDC"


def test_registry_resolves_known_and_unknown_instruments() -> None:
    registry = InstrumentRegistry.from_overrides({"9": "JUP/USDC", "bad": "x"})
    assert registry.resolve_symbol(1) == "SOL/USDC"
    assert registry.resolve_symbol(9) == "JUP/USDC"
    assert registry.resolve_symbol(77) == "Instrument #77"
    assert registry.matches(2, "btc/usdc")
    assert registry.matches(2, "2")
    assert not registry.matches(2, "SOL/USDC")
