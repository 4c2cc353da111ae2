from __future__ import annotations

import argparse
import sys
from pathlib import Path

from deriverse_journal.config.app_config import load_app_config, merged_env
from deriverse_journal.config.wallets import load_wallets_config, resolve_wallet
from deriverse_journal.errors import RateLimited, UpstreamUnavailable
from deriverse_journal.logs import configure_logging
from deriverse_journal.service import SyncResult, build_service


def main(argv: list[str] | None = None) -> int:
    app_config = load_app_config()
    parser = argparse.ArgumentParser(description="Sync Deriverse fills for a wallet into SQLite.")
    parser.add_argument("wallet", nargs="?", default=None, help="Wallet name from wallets config, or an address.")
    parser.add_argument("--all", action="store_true", help="Sync every active wallet in the wallets config.")
    parser.add_argument("--wallets-config", type=Path, default=None, help="Path to wallets.toml.")
    parser.add_argument("--env", type=Path, default=app_config.app.env_path, help="Path to .env file.")
    parser.add_argument("--rpc-url", type=str, default=None, help="Override DERIVERSE_RPC_URL.")
    parser.add_argument("--limit", type=int, default=None, help="Transactions to fetch (default config).")
    parser.add_argument("--log-level", type=str, default=app_config.app.log_level, help="Logging level.")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    env = merged_env(args.env)
    if args.rpc_url:
        env["DERIVERSE_RPC_URL"] = args.rpc_url
    try:
        service = build_service(app_config, env)
    except UpstreamUnavailable as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    try:
        if args.all:
            config_path = args.wallets_config or Path(
                env.get("DERIVERSE_JOURNAL_WALLETS_CONFIG", "config/wallets.toml")
            )
            config = load_wallets_config(config_path)
            addresses = [wallet.address for wallet in config.active_wallets()]
        else:
            addresses = [resolve_wallet(args.wallet, env=env, config_path=args.wallets_config).address]
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    if not addresses:
        print("No active wallets configured.", file=sys.stderr)
        return 1

    status = 0
    for address in addresses:
        try:
            result = service.sync(address, limit=args.limit)
        except RateLimited as exc:
            print(f"{address} rate_limited retry_after={exc.retry_after_seconds}s", file=sys.stderr)
            status = 1
            continue
        except UpstreamUnavailable as exc:
            print(f"{address} sync_failed {exc}", file=sys.stderr)
            status = 1
            continue
        _print_result(result)
    return status


def _print_result(result: SyncResult) -> None:
    print(f"wallet {result.wallet_id}")
    print(f"transactions {result.transactions}")
    print(f"decoded {result.decoded_fills}")
    print(f"inserted {result.inserted_count}")
    print(f"skipped {result.skipped_records}")
    print(f"total_fills {result.total_fills}")


if __name__ == "__main__":
    raise SystemExit(main())
