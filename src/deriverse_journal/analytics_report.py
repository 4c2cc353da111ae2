from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from datetime import date
from pathlib import Path

from deriverse_journal.config.app_config import load_app_config
from deriverse_journal.config.wallets import resolve_wallet
from deriverse_journal.errors import UpstreamUnavailable
from deriverse_journal.logs import configure_logging
from deriverse_journal.models import AnalyticsFilters
from deriverse_journal.serialize import to_jsonable
from deriverse_journal.service import MetricsBundle, build_service


def main(argv: list[str] | None = None) -> int:
    app_config = load_app_config()
    parser = argparse.ArgumentParser(description="Compute wallet analytics from the SQLite fill store.")
    parser.add_argument("wallet", nargs="?", default=None, help="Wallet name from wallets config, or an address.")
    parser.add_argument("--db", type=Path, default=app_config.app.db_path, help="SQLite DB path.")
    parser.add_argument("--symbol", type=str, default=None, help="Instrument id or symbol label.")
    parser.add_argument("--start-date", type=date.fromisoformat, default=None, help="First UTC day (YYYY-MM-DD).")
    parser.add_argument("--end-date", type=date.fromisoformat, default=None, help="Last UTC day (YYYY-MM-DD).")
    parser.add_argument("--journal-limit", type=int, default=app_config.analytics.journal_limit)
    parser.add_argument("--json", action="store_true", help="Print JSON output.")
    parser.add_argument("--out", type=Path, default=None, help="Write output to a file instead of stdout.")
    parser.add_argument("--log-level", type=str, default=app_config.app.log_level, help="Logging level.")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    if not args.db.exists():
        print(f"Database not found: {args.db}", file=sys.stderr)
        return 1
    try:
        wallet = resolve_wallet(args.wallet)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    report_config = replace(
        app_config,
        app=replace(app_config.app, db_path=args.db),
        analytics=replace(app_config.analytics, journal_limit=args.journal_limit),
    )
    filters = AnalyticsFilters(symbol=args.symbol, start_date=args.start_date, end_date=args.end_date)
    try:
        service = build_service(report_config, env={})
        bundle = service.get_analytics(wallet.address, filters)
    except UpstreamUnavailable as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if args.json or (args.out is not None and args.out.suffix.lower() == ".json"):
        text = json.dumps(to_jsonable(bundle), indent=2, sort_keys=True)
    else:
        text = format_bundle(bundle)

    if args.out is None:
        print(text)
    else:
        args.out.parent.mkdir(parents=True, exist_ok=True)
        args.out.write_text(text + "\n", encoding="utf-8")
    return 0


def format_bundle(bundle: MetricsBundle) -> str:
    core = bundle.core
    long_short = bundle.long_short
    risk = bundle.risk
    lines = [
        f"total_trades {core.total_trades}",
        f"winning_trades {core.winning_trades}",
        f"losing_trades {core.losing_trades}",
        f"win_rate {_fmt(core.win_rate)}",
        f"total_pnl {_fmt(core.total_pnl)}",
        f"total_fees {_fmt(core.total_fees)}",
        f"net_pnl {_fmt(core.net_pnl)}",
        f"total_volume {_fmt(core.total_volume)}",
        f"long_short_ratio {_fmt(long_short.ratio)} {long_short.bias}",
        f"largest_gain {_fmt(risk.largest_gain)}",
        f"largest_loss {_fmt(risk.largest_loss)}",
        f"profit_factor {_fmt(risk.profit_factor)}",
        f"avg_holding_seconds {risk.avg_holding_seconds:.0f}",
        f"max_drawdown {_fmt(bundle.drawdown.max_drawdown)}",
        f"current_drawdown {_fmt(bundle.drawdown.current_drawdown)}",
        f"sessions {bundle.sessions.total_sessions}"
        f" profitable={bundle.sessions.profitable_sessions} losing={bundle.sessions.losing_sessions}",
    ]
    for instrument_id, state in sorted(bundle.positions.items()):
        if state.is_flat:
            continue
        lines.append(f"open_position {instrument_id} {_fmt(state.net_size)} @ {_fmt(state.avg_entry_price)}")
    return "\n".join(lines)


def _fmt(value) -> str:
    return f"{value:.4f}"


if __name__ == "__main__":
    raise SystemExit(main())
