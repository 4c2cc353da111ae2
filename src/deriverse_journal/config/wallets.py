from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python <3.11
    import tomli as tomllib

_BASE58_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


@dataclass(frozen=True)
class WalletConfig:
    name: str
    address: str
    active: bool


@dataclass(frozen=True)
class WalletsConfig:
    default_wallet: str | None
    wallets: dict[str, WalletConfig]

    def active_wallets(self) -> list[WalletConfig]:
        return [wallet for wallet in self.wallets.values() if wallet.active]


def looks_like_solana_address(value: str | None) -> bool:
    if not value:
        return False
    return bool(_BASE58_ADDRESS.match(value.strip()))


def load_wallets_config(path: Path) -> WalletsConfig:
    if not path.exists():
        return WalletsConfig(default_wallet=None, wallets={})
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    default_wallet = raw.get("default_wallet")
    block = raw.get("wallets", {}) if isinstance(raw, dict) else {}
    wallets: dict[str, WalletConfig] = {}
    for name, cfg in block.items():
        if not isinstance(cfg, Mapping):
            continue
        address = str(cfg.get("address") or "").strip()
        if not looks_like_solana_address(address):
            raise ValueError(f"Wallet '{name}' has an invalid Solana address.")
        active_raw = cfg.get("active")
        wallets[name] = WalletConfig(
            name=name,
            address=address,
            active=True if active_raw is None else bool(active_raw),
        )
    if default_wallet and default_wallet not in wallets:
        raise ValueError(f"Default wallet '{default_wallet}' not found in wallets config.")
    return WalletsConfig(default_wallet=default_wallet, wallets=wallets)


def resolve_wallet(
    name_or_address: str | None = None,
    env: Mapping[str, str] | None = None,
    config_path: Path | None = None,
) -> WalletConfig:
    """Resolve a configured wallet name, or accept a raw address as-is."""
    env = os.environ if env is None else env
    if looks_like_solana_address(name_or_address):
        return WalletConfig(name=str(name_or_address), address=str(name_or_address).strip(), active=True)
    config_path = Path(
        config_path or env.get("DERIVERSE_JOURNAL_WALLETS_CONFIG", "config/wallets.toml")
    )
    config = load_wallets_config(config_path)
    resolved = name_or_address or env.get("DERIVERSE_JOURNAL_WALLET") or config.default_wallet
    if resolved is None and config.wallets:
        resolved = next(iter(config.wallets))
    if resolved is None:
        raise ValueError("No wallet given and no wallets configured.")
    if resolved not in config.wallets:
        if looks_like_solana_address(resolved):
            return WalletConfig(name=resolved, address=resolved, active=True)
        raise ValueError(f"Unknown wallet '{resolved}'.")
    return config.wallets[resolved]
