from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from deriverse_journal.config.app_config import load_app_config
from deriverse_journal.ingest.correlator import transactions_to_fills
from deriverse_journal.instruments import InstrumentRegistry
from deriverse_journal.logs import configure_logging
from deriverse_journal.models import Fill, LedgerTransaction
from deriverse_journal.reconstruct.positions import enrich_fills


def main(argv: list[str] | None = None) -> int:
    app_config = load_app_config()
    parser = argparse.ArgumentParser(description="Decode a dump of Deriverse transactions into fills.")
    parser.add_argument("path", type=Path, help="JSON list of {signature, blockTime, logMessages}.")
    parser.add_argument("--wallet", type=str, default="offline", help="Wallet id stamped on decoded fills.")
    parser.add_argument("--heuristic", action="store_true", help="Enable the plain-text fallback parser.")
    parser.add_argument("--json", action="store_true", help="Print JSON output.")
    parser.add_argument("--log-level", type=str, default="WARNING", help="Logging level.")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    try:
        transactions = load_transactions(args.path)
    except (OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    decoder = app_config.decoder
    result = transactions_to_fills(
        transactions,
        wallet_id=args.wallet,
        scales=decoder.scales(),
        registry=InstrumentRegistry.from_overrides(app_config.instruments),
        fallback=decoder.fallback(),
        heuristic_fallback=args.heuristic or decoder.heuristic_fallback,
    )
    if result.skipped_records:
        print(f"Skipped {result.skipped_records} undecodable log records.", file=sys.stderr)

    fills = enrich_fills(result.fills)
    if args.json:
        print(json.dumps([_fill_to_dict(fill) for fill in fills], indent=2))
    else:
        for fill in fills:
            print(_format_fill(fill))
    return 0


def load_transactions(path: Path) -> list[LedgerTransaction]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, Mapping):
        payload = payload.get("transactions", [])
    if not isinstance(payload, list):
        raise ValueError("Expected a JSON list of transactions.")
    return list(_parse_transactions(payload))


def _parse_transactions(rows: Iterable[Any]) -> Iterable[LedgerTransaction]:
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        signature = row.get("signature")
        if not signature:
            continue
        meta = row.get("meta") if isinstance(row.get("meta"), Mapping) else {}
        logs = row.get("logMessages") or meta.get("logMessages") or []
        block_time = row.get("blockTime")
        yield LedgerTransaction(
            signature=str(signature),
            block_time=(
                datetime.fromtimestamp(int(block_time), tz=timezone.utc) if block_time is not None else None
            ),
            log_lines=[str(line) for line in logs],
            slot=row.get("slot"),
        )


def _format_fill(fill: Fill) -> str:
    return (
        f"{fill.executed_at.isoformat()} {fill.symbol} {fill.market_kind} {fill.side} "
        f"{fill.quantity} @ {fill.price} fee={fill.fee_amount} pnl={fill.realized_pnl} "
        f"[{fill.confidence}] {fill.signature}"
    )


def _fill_to_dict(fill: Fill) -> dict[str, Any]:
    return {
        "signature": fill.signature,
        "instrument_id": fill.instrument_id,
        "symbol": fill.symbol,
        "market_kind": fill.market_kind,
        "side": fill.side,
        "price": str(fill.price),
        "quantity": str(fill.quantity),
        "fee_amount": str(fill.fee_amount),
        "realized_pnl": str(fill.realized_pnl),
        "executed_at": fill.executed_at.isoformat(),
        "order_type": fill.order_type,
        "confidence": fill.confidence,
    }


if __name__ == "__main__":
    raise SystemExit(main())
