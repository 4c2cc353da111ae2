from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from builders import fee_payload, fill_payload, place_payload, program_data
from deriverse_journal.ingest.correlator import (
    FALLBACK_CLIENT_ID,
    FALLBACK_ORDER_ID,
    InstrumentFallback,
    correlate_transaction,
    transactions_to_fills,
)
from deriverse_journal.ingest.decoder import decode_log_lines
from deriverse_journal.models import CONFIDENCE_HEURISTIC, LedgerTransaction
from deriverse_journal.reconstruct.positions import enrich_fills

WHEN = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _tx(signature: str, lines: list[str], when: datetime | None = WHEN) -> LedgerTransaction:
    return LedgerTransaction(signature=signature, block_time=when, log_lines=lines)


def _correlate(tx: LedgerTransaction, **kwargs):
    return correlate_transaction(tx, decode_log_lines(tx.log_lines).events, wallet_id="w", **kwargs)


def test_place_order_context_applies_to_following_fill() -> None:
    tx = _tx(
        "tx1",
        [
            program_data(place_payload(order_type=1, ioc=True, leverage=3, instrument_id=3)),
            program_data(fill_payload(instrument_id=0xFFFFFFFF)),
        ],
    )
    [fill] = _correlate(tx)

    assert fill.instrument_id == 3
    assert fill.symbol == "ETH/USDC"
    assert fill.order_type == "MARKET"
    assert fill.is_ioc is True
    assert fill.leverage == 3
    assert fill.executed_at == WHEN
    assert fill.raw["instrument_source"] == "place_order"


def test_fill_instrument_takes_precedence_over_context() -> None:
    tx = _tx(
        "tx1",
        [program_data(place_payload(instrument_id=3)), program_data(fill_payload(instrument_id=4))],
    )
    [fill] = _correlate(tx)
    assert fill.instrument_id == 4


def test_fill_without_context_uses_default_fallback() -> None:
    [fill] = _correlate(_tx("tx1", [program_data(fill_payload(instrument_id=0xFFFFFFFF))]))
    assert fill.instrument_id == 1
    assert fill.order_type == "UNKNOWN"
    assert fill.raw["instrument_source"] == "fallback:default"


@pytest.mark.parametrize(
    ("policy", "expected"),
    [(FALLBACK_ORDER_ID, 99), (FALLBACK_CLIENT_ID, 7)],
)
def test_fallback_policies(policy: str, expected: int) -> None:
    tx = _tx("tx1", [program_data(fill_payload(instrument_id=0xFFFFFFFF))])
    [fill] = _correlate(tx, fallback=InstrumentFallback(policy=policy))
    assert fill.instrument_id == expected


def test_unknown_fallback_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        InstrumentFallback(policy="guess")


def test_context_resets_between_transactions() -> None:
    first = _tx("tx1", [program_data(place_payload(instrument_id=3))])
    second = _tx("tx2", [program_data(fill_payload(instrument_id=0xFFFFFFFF))])
    result = transactions_to_fills([first, second], wallet_id="w")
    assert [fill.instrument_id for fill in result.fills] == [1]


def test_fee_event_attaches_to_preceding_fill_of_same_market() -> None:
    tx = _tx(
        "tx1",
        [
            program_data(fill_payload(tag=11, price="10")),
            program_data(fill_payload(tag=19, price="20")),
            program_data(fee_payload(tag=15, fees="0.3")),
            program_data(fee_payload(tag=15, fees="0.2")),
        ],
    )
    spot, perp = _correlate(tx)
    assert spot.fee_amount == Decimal("0.5")
    assert perp.fee_amount == Decimal("0")


def test_embedded_fee_is_not_overwritten_by_fee_event() -> None:
    tx = _tx(
        "tx1",
        [program_data(fill_payload(rebates="-0.4")), program_data(fee_payload(fees="9"))],
    )
    [fill] = _correlate(tx)
    assert fill.fee_amount == Decimal("0.4")


def test_multiple_fills_in_one_transaction_get_distinct_signatures() -> None:
    tx = _tx("tx1", [program_data(fill_payload()), program_data(fill_payload(sell=True))])
    fills = _correlate(tx)
    assert [fill.signature for fill in fills] == ["tx1:0", "tx1:1"]
    assert {fill.tx_signature for fill in fills} == {"tx1"}


def test_batch_sorted_by_time_and_counts_skips() -> None:
    late = _tx("late", [program_data(fill_payload())], when=datetime(2024, 3, 2, tzinfo=timezone.utc))
    early = _tx(
        "early",
        [program_data(fill_payload()), "Program data: @@@"],
        when=datetime(2024, 3, 1, tzinfo=timezone.utc),
    )
    result = transactions_to_fills([late, early], wallet_id="w")
    assert [fill.tx_signature for fill in result.fills] == ["early", "late"]
    assert result.skipped_records == 1
    assert result.transactions == 2


def test_missing_block_time_uses_epoch() -> None:
    [fill] = _correlate(_tx("tx1", [program_data(fill_payload())], when=None))
    assert fill.executed_at == datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_heuristic_fallback_only_when_enabled_and_no_binary_fills() -> None:
    text_only = _tx("tx-text", ["Program log: taker sell price=50 size=2"])
    mixed = _tx(
        "tx-mixed",
        [program_data(fill_payload()), "Program log: taker sell price=50 size=2"],
    )

    disabled = transactions_to_fills([text_only], wallet_id="w")
    assert disabled.fills == []

    enabled = transactions_to_fills([text_only, mixed], wallet_id="w", heuristic_fallback=True)
    heuristic = [fill for fill in enabled.fills if fill.confidence == CONFIDENCE_HEURISTIC]
    assert [fill.tx_signature for fill in heuristic] == ["tx-text"]
    assert enabled.heuristic_transactions == 1
    assert len([fill for fill in enabled.fills if fill.tx_signature == "tx-mixed"]) == 1


def test_fills_beyond_ten_keep_log_order_through_enrichment() -> None:
    lines = [program_data(fill_payload(instrument_id=1, price="100", quantity="1")) for _ in range(10)]
    lines.append(program_data(fill_payload(sell=True, instrument_id=1, price="110", quantity="10")))
    result = transactions_to_fills([_tx("TX", lines)], wallet_id="w")

    assert [fill.fill_index for fill in result.fills] == list(range(11))
    enriched = enrich_fills(reversed(result.fills))
    assert [fill.signature for fill in enriched] == [f"TX:{index}" for index in range(11)]
    assert enriched[-1].realized_pnl == Decimal(100)


def test_out_of_range_fallback_id_uses_default_instrument() -> None:
    tx = _tx("tx1", [program_data(fill_payload(instrument_id=0xFFFFFFFF, order_id=2**64 - 1))])
    fallback = InstrumentFallback(policy=FALLBACK_ORDER_ID, default_instrument_id=2)
    [fill] = _correlate(tx, fallback=fallback)

    assert fill.instrument_id == 2
    assert fill.order_id == 2**64 - 1
    assert fill.raw["instrument_source"] == "fallback:order_id"
