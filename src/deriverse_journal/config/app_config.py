from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python <3.11
    import tomli as tomllib

from deriverse_journal.ingest.correlator import FALLBACK_DEFAULT, FALLBACK_POLICIES, InstrumentFallback
from deriverse_journal.ingest.decoder import DEFAULT_SCALE, DecoderScales
from deriverse_journal.ingest.solana_rpc import SolanaRpcConfig

DEFAULT_CONFIG_PATH = Path("config/app.toml")


@dataclass(frozen=True)
class AppSettings:
    db_path: Path
    host: str
    port: int
    reload: bool
    env_path: Path
    log_level: str


@dataclass(frozen=True)
class RpcSettings:
    url: str
    timeout_seconds: float
    retry_attempts: int
    retry_backoff_seconds: float
    signatures_limit: int
    max_concurrency: int
    commitment: str


@dataclass(frozen=True)
class DecoderSettings:
    price_scale: Decimal
    quantity_scale: Decimal
    fee_scale: Decimal
    instrument_fallback: str
    default_instrument_id: int
    heuristic_fallback: bool

    def scales(self) -> DecoderScales:
        return DecoderScales(price=self.price_scale, quantity=self.quantity_scale, fee=self.fee_scale)

    def fallback(self) -> InstrumentFallback:
        return InstrumentFallback(
            policy=self.instrument_fallback, default_instrument_id=self.default_instrument_id
        )


@dataclass(frozen=True)
class RateLimitSettings:
    max_requests: int
    window_seconds: float
    sweep_interval_seconds: float


@dataclass(frozen=True)
class AnalyticsSettings:
    journal_limit: int


@dataclass(frozen=True)
class AppConfig:
    app: AppSettings
    rpc: RpcSettings
    decoder: DecoderSettings
    rate_limit: RateLimitSettings
    analytics: AnalyticsSettings
    instruments: dict[int, str]

    def rpc_config(self, env: Mapping[str, str] | None = None) -> SolanaRpcConfig:
        base = SolanaRpcConfig(
            rpc_url=self.rpc.url,
            timeout_seconds=self.rpc.timeout_seconds,
            retry_attempts=self.rpc.retry_attempts,
            retry_backoff_seconds=self.rpc.retry_backoff_seconds,
            signatures_limit=self.rpc.signatures_limit,
            max_concurrency=self.rpc.max_concurrency,
            commitment=self.rpc.commitment,
        )
        if env is None:
            return base
        return SolanaRpcConfig.from_env(env, base=base)


def load_app_config(path: Path | None = None, env: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if env is None else env
    config_path = path or Path(env.get("DERIVERSE_JOURNAL_CONFIG") or DEFAULT_CONFIG_PATH)
    raw: Mapping[str, Any] = {}
    if config_path.exists():
        raw = tomllib.loads(config_path.read_text(encoding="utf-8"))

    app_raw = _section(raw, "app")
    rpc_raw = _section(raw, "rpc")
    decoder_raw = _section(raw, "decoder")
    rate_raw = _section(raw, "rate_limit")
    analytics_raw = _section(raw, "analytics")
    instruments_raw = _section(raw, "instruments")

    app = AppSettings(
        db_path=Path(app_raw.get("db_path", "data/deriverse_journal.sqlite")),
        host=str(app_raw.get("host", "127.0.0.1")),
        port=int(app_raw.get("port", 8000)),
        reload=bool(app_raw.get("reload", False)),
        env_path=Path(app_raw.get("env_path", ".env")),
        log_level=str(app_raw.get("log_level", "INFO")).upper(),
    )

    rpc = RpcSettings(
        url=str(rpc_raw.get("url", "https://api.devnet.solana.com")),
        timeout_seconds=float(rpc_raw.get("timeout_seconds", 30.0)),
        retry_attempts=int(rpc_raw.get("retry_attempts", 3)),
        retry_backoff_seconds=float(rpc_raw.get("retry_backoff_seconds", 0.75)),
        signatures_limit=int(rpc_raw.get("signatures_limit", 50)),
        max_concurrency=max(1, int(rpc_raw.get("max_concurrency", 4))),
        commitment=str(rpc_raw.get("commitment", "confirmed")),
    )

    fallback = str(decoder_raw.get("instrument_fallback", FALLBACK_DEFAULT)).strip().lower()
    if fallback not in FALLBACK_POLICIES:
        raise ValueError(
            f"decoder.instrument_fallback must be one of {', '.join(FALLBACK_POLICIES)}; got '{fallback}'."
        )
    decoder = DecoderSettings(
        price_scale=_scale(decoder_raw.get("price_scale")),
        quantity_scale=_scale(decoder_raw.get("quantity_scale")),
        fee_scale=_scale(decoder_raw.get("fee_scale")),
        instrument_fallback=fallback,
        default_instrument_id=int(decoder_raw.get("default_instrument_id", 1)),
        heuristic_fallback=bool(decoder_raw.get("heuristic_fallback", False)),
    )

    rate_limit = RateLimitSettings(
        max_requests=int(rate_raw.get("max_requests", 5)),
        window_seconds=float(rate_raw.get("window_seconds", 300.0)),
        sweep_interval_seconds=float(rate_raw.get("sweep_interval_seconds", 60.0)),
    )

    analytics = AnalyticsSettings(
        journal_limit=int(analytics_raw.get("journal_limit", 100)),
    )

    return AppConfig(
        app=app,
        rpc=rpc,
        decoder=decoder,
        rate_limit=rate_limit,
        analytics=analytics,
        instruments=_instrument_labels(instruments_raw),
    )


def load_dotenv(path: Path) -> dict[str, str]:
    env: dict[str, str] = {}
    if not path.exists():
        return env

    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        env[key.strip()] = value.strip().strip("\"").strip("'")
    return env


def merged_env(env_path: Path, env: Mapping[str, str] | None = None) -> dict[str, str]:
    """.env values overlaid by the process environment."""
    merged = load_dotenv(env_path)
    merged.update(os.environ if env is None else env)
    return merged


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    if isinstance(value, Mapping):
        return value
    return {}


def _scale(value: Any) -> Decimal:
    if value in (None, ""):
        return DEFAULT_SCALE
    try:
        scale = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decoder scale: {value!r}") from exc
    if not scale.is_finite() or scale <= 0:
        raise ValueError(f"Decoder scale must be positive: {value!r}")
    return scale


def _instrument_labels(raw: Mapping[str, Any]) -> dict[int, str]:
    output: dict[int, str] = {}
    for key, value in raw.items():
        try:
            instrument_id = int(key)
        except (TypeError, ValueError):
            continue
        label = str(value).strip()
        if label:
            output[instrument_id] = label
    return output
