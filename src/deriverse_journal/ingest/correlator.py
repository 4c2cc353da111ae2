from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable

from deriverse_journal.ingest.decoder import (
    INSTRUMENT_ABSENT,
    DecoderScales,
    decode_log_lines,
    decode_text_fallback,
)
from deriverse_journal.instruments import InstrumentRegistry
from deriverse_journal.models import (
    CONFIDENCE_DECODED,
    CONFIDENCE_HEURISTIC,
    ORDER_TYPE_UNKNOWN,
    DecodedEvent,
    FeeEvent,
    Fill,
    FillOrderEvent,
    LedgerTransaction,
    PlaceOrderEvent,
    fill_sort_key,
)

logger = logging.getLogger(__name__)

FALLBACK_DEFAULT = "default"
FALLBACK_ORDER_ID = "order_id"
FALLBACK_CLIENT_ID = "client_id"
FALLBACK_POLICIES = (FALLBACK_DEFAULT, FALLBACK_ORDER_ID, FALLBACK_CLIENT_ID)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class InstrumentFallback:
    """Instrument id used for a fill that names none and has no place-order context.

    ``default`` always yields ``default_instrument_id``. ``order_id`` and
    ``client_id`` reuse that field of the fill when it is a valid u32 instrument
    id and fall back to ``default_instrument_id`` otherwise.
    """

    policy: str = FALLBACK_DEFAULT
    default_instrument_id: int = 1

    def __post_init__(self) -> None:
        if self.policy not in FALLBACK_POLICIES:
            raise ValueError(f"Unknown instrument fallback policy '{self.policy}'.")

    def resolve(self, event: FillOrderEvent) -> int:
        candidate = None
        if self.policy == FALLBACK_ORDER_ID:
            candidate = event.order_id
        elif self.policy == FALLBACK_CLIENT_ID:
            candidate = event.client_id
        if not candidate:
            return self.default_instrument_id
        if not 0 < int(candidate) < INSTRUMENT_ABSENT:
            logger.warning(
                "%s %s is not a valid instrument id; using %d.",
                self.policy,
                candidate,
                self.default_instrument_id,
            )
            return self.default_instrument_id
        return int(candidate)


@dataclass
class OrderContext:
    instrument_id: int | None = None
    order_type: str = ORDER_TYPE_UNKNOWN
    is_ioc: bool = False
    leverage: int | None = None

    def update(self, event: PlaceOrderEvent) -> None:
        self.instrument_id = event.instrument_id
        self.order_type = event.order_type
        self.is_ioc = event.is_ioc
        self.leverage = event.leverage


@dataclass
class CorrelationResult:
    fills: list[Fill] = field(default_factory=list)
    skipped_records: int = 0
    transactions: int = 0
    heuristic_transactions: int = 0


@dataclass
class _PendingFill:
    event: FillOrderEvent
    instrument_id: int
    order_type: str
    is_ioc: bool
    leverage: int | None
    fee: Decimal
    fee_embedded: bool
    context_source: str


def correlate_transaction(
    tx: LedgerTransaction,
    events: Iterable[DecodedEvent],
    *,
    wallet_id: str,
    registry: InstrumentRegistry | None = None,
    fallback: InstrumentFallback | None = None,
    confidence: str = CONFIDENCE_DECODED,
) -> list[Fill]:
    registry = registry or InstrumentRegistry()
    fallback = fallback or InstrumentFallback()
    context = OrderContext()
    pending: list[_PendingFill] = []

    for event in events:
        if isinstance(event, PlaceOrderEvent):
            context.update(event)
        elif isinstance(event, FillOrderEvent):
            pending.append(_pending_fill(event, context, fallback))
        elif isinstance(event, FeeEvent):
            _attach_fee(pending, event, tx.signature)

    executed_at = tx.block_time or EPOCH
    if tx.block_time is None and pending:
        logger.warning("Transaction %s has no block time; using epoch.", tx.signature)

    fills: list[Fill] = []
    for index, item in enumerate(pending):
        event = item.event
        fills.append(
            Fill(
                signature=f"{tx.signature}:{index}",
                tx_signature=tx.signature,
                wallet_id=wallet_id,
                instrument_id=item.instrument_id,
                symbol=registry.resolve_symbol(item.instrument_id),
                side=event.side,
                market_kind=event.market_kind,
                price=event.price,
                quantity=event.quantity,
                fee_amount=item.fee,
                executed_at=executed_at,
                fill_index=index,
                order_type=item.order_type,
                is_ioc=item.is_ioc,
                leverage=item.leverage,
                order_id=event.order_id or None,
                client_id=event.client_id or None,
                confidence=confidence,
                raw={
                    "raw_size": event.raw_size,
                    "instrument_source": item.context_source,
                    "slot": tx.slot,
                },
            )
        )
    return fills


def transactions_to_fills(
    transactions: Iterable[LedgerTransaction],
    *,
    wallet_id: str,
    scales: DecoderScales | None = None,
    registry: InstrumentRegistry | None = None,
    fallback: InstrumentFallback | None = None,
    heuristic_fallback: bool = False,
) -> CorrelationResult:
    result = CorrelationResult()
    for tx in transactions:
        result.transactions += 1
        decoded = decode_log_lines(tx.log_lines, scales)
        result.skipped_records += decoded.skipped
        fills = correlate_transaction(
            tx, decoded.events, wallet_id=wallet_id, registry=registry, fallback=fallback
        )
        if not fills and heuristic_fallback:
            guessed = decode_text_fallback(tx.log_lines)
            if guessed:
                result.heuristic_transactions += 1
                logger.info(
                    "Transaction %s: %d heuristic fills from plain log text.", tx.signature, len(guessed)
                )
                fills = correlate_transaction(
                    tx,
                    guessed,
                    wallet_id=wallet_id,
                    registry=registry,
                    fallback=fallback,
                    confidence=CONFIDENCE_HEURISTIC,
                )
        result.fills.extend(fills)
    result.fills.sort(key=fill_sort_key)
    return result


def _pending_fill(
    event: FillOrderEvent, context: OrderContext, fallback: InstrumentFallback
) -> _PendingFill:
    if event.instrument_id is not None:
        instrument_id = event.instrument_id
        source = "fill"
    elif context.instrument_id is not None:
        instrument_id = context.instrument_id
        source = "place_order"
    else:
        instrument_id = fallback.resolve(event)
        source = f"fallback:{fallback.policy}"
    return _PendingFill(
        event=event,
        instrument_id=instrument_id,
        order_type=context.order_type,
        is_ioc=context.is_ioc,
        leverage=context.leverage,
        fee=event.fee if event.fee is not None else Decimal(0),
        fee_embedded=event.fee is not None,
        context_source=source,
    )


def _attach_fee(pending: list[_PendingFill], event: FeeEvent, signature: str) -> None:
    for item in reversed(pending):
        if item.fee_embedded or item.event.market_kind != event.market_kind:
            continue
        item.fee += event.amount
        return
    logger.debug("Transaction %s: fee event with no preceding fill dropped.", signature)
