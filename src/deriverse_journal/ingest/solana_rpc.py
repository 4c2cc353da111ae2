from __future__ import annotations

import itertools
import json
import logging
import time
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from deriverse_journal.errors import UpstreamUnavailable
from deriverse_journal.models import LedgerTransaction

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.devnet.solana.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 0.75
DEFAULT_SIGNATURES_LIMIT = 50
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_COMMITMENT = "confirmed"
SIGNATURES_PAGE_MAX = 1000


class LedgerReader(Protocol):
    def list_transactions(self, wallet_id: str, limit: int | None = None) -> list[LedgerTransaction]:
        ...


@dataclass(frozen=True)
class SolanaRpcConfig:
    rpc_url: str = DEFAULT_RPC_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    signatures_limit: int = DEFAULT_SIGNATURES_LIMIT
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    commitment: str = DEFAULT_COMMITMENT

    @classmethod
    def from_env(cls, env: Mapping[str, str], base: "SolanaRpcConfig | None" = None) -> "SolanaRpcConfig":
        base = base or cls()
        return cls(
            rpc_url=str(env.get("DERIVERSE_RPC_URL", base.rpc_url)).strip() or base.rpc_url,
            timeout_seconds=_to_float(env.get("DERIVERSE_RPC_TIMEOUT_SECONDS"), base.timeout_seconds),
            retry_attempts=int(env.get("DERIVERSE_RPC_RETRY_ATTEMPTS", str(base.retry_attempts))),
            retry_backoff_seconds=_to_float(
                env.get("DERIVERSE_RPC_RETRY_BACKOFF_SECONDS"), base.retry_backoff_seconds
            ),
            signatures_limit=int(env.get("DERIVERSE_RPC_SIGNATURES_LIMIT", str(base.signatures_limit))),
            max_concurrency=base.max_concurrency,
            commitment=base.commitment,
        )


class SolanaLedgerReader:
    """Lists a wallet's confirmed transactions through Solana JSON-RPC."""

    def __init__(self, config: SolanaRpcConfig) -> None:
        self._config = config
        self._ids = itertools.count(1)

    def list_transactions(self, wallet_id: str, limit: int | None = None) -> list[LedgerTransaction]:
        signatures = self.fetch_signatures(wallet_id, limit or self._config.signatures_limit)
        live = [row for row in signatures if row.get("err") is None]
        if len(live) != len(signatures):
            logger.info("Skipping %d failed transactions for %s", len(signatures) - len(live), wallet_id)
        workers = max(1, self._config.max_concurrency)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(lambda row: self.fetch_transaction(str(row["signature"])), live))
        return [tx for tx in results if tx is not None]

    def fetch_signatures(self, address: str, limit: int) -> list[Mapping[str, Any]]:
        output: list[Mapping[str, Any]] = []
        before: str | None = None
        while len(output) < limit:
            options: dict[str, Any] = {
                "limit": min(SIGNATURES_PAGE_MAX, limit - len(output)),
                "commitment": self._config.commitment,
            }
            if before:
                options["before"] = before
            response = self._call("getSignaturesForAddress", [address, options])
            if not isinstance(response, list):
                raise UpstreamUnavailable("Unexpected getSignaturesForAddress response shape")
            page = [row for row in response if isinstance(row, Mapping) and row.get("signature")]
            if not page:
                break
            output.extend(page)
            before = str(page[-1]["signature"])
            if len(page) < options["limit"]:
                break
        return output[:limit]

    def fetch_transaction(self, signature: str) -> LedgerTransaction | None:
        response = self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": self._config.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not isinstance(response, Mapping):
            return None
        return parse_transaction(signature, response)

    def _call(self, method: str, params: list[Any]) -> Any:
        body = json.dumps(
            {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        ).encode("utf-8")
        last_error: Exception | None = None
        attempts = max(1, self._config.retry_attempts)
        for attempt in range(attempts):
            try:
                request = urllib.request.Request(
                    self._config.rpc_url,
                    method="POST",
                    data=body,
                    headers={"Content-Type": "application/json", "Accept": "application/json"},
                )
                with urllib.request.urlopen(request, timeout=self._config.timeout_seconds) as response:
                    raw = response.read()
                if not raw:
                    raise RuntimeError(f"Empty response body from {method}")
                payload = json.loads(raw.decode("utf-8"))
                if isinstance(payload, Mapping) and payload.get("error"):
                    raise RuntimeError(f"{method} error: {payload['error']}")
                return payload.get("result") if isinstance(payload, Mapping) else None
            except (urllib.error.URLError, json.JSONDecodeError, RuntimeError, OSError) as exc:
                last_error = exc
                if attempt >= attempts - 1:
                    break
                time.sleep(self._config.retry_backoff_seconds * (2**attempt))
        raise UpstreamUnavailable(f"Solana RPC {method} failed: {last_error}") from last_error


def parse_transaction(signature: str, payload: Mapping[str, Any]) -> LedgerTransaction | None:
    meta = payload.get("meta")
    if not isinstance(meta, Mapping):
        return None
    if meta.get("err") is not None:
        return None
    logs = meta.get("logMessages") or []
    block_time = payload.get("blockTime")
    slot = payload.get("slot")
    return LedgerTransaction(
        signature=signature,
        block_time=_from_unix(block_time),
        log_lines=[str(line) for line in logs],
        slot=int(slot) if isinstance(slot, int) else None,
    )


def _from_unix(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _to_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
