from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Mapping

from deriverse_journal.config.app_config import AppConfig, merged_env
from deriverse_journal.errors import RateLimited
from deriverse_journal.ingest.correlator import InstrumentFallback, transactions_to_fills
from deriverse_journal.ingest.decoder import DecoderScales
from deriverse_journal.ingest.solana_rpc import LedgerReader, SolanaLedgerReader
from deriverse_journal.instruments import InstrumentRegistry
from deriverse_journal.metrics.breakdown import (
    CalendarBreakdown,
    FeeComposition,
    SessionPerformance,
    compute_calendar_breakdown,
    compute_fee_composition,
    compute_session_performance,
)
from deriverse_journal.metrics.journal import JournalRow, format_journal
from deriverse_journal.metrics.series import DrawdownSummary, PnlPoint, compute_drawdown, compute_pnl_series
from deriverse_journal.metrics.summary import (
    CoreMetrics,
    LongShortMetrics,
    RiskMetrics,
    compute_core_metrics,
    compute_long_short,
    compute_risk_metrics,
)
from deriverse_journal.models import AnalyticsFilters, Fill
from deriverse_journal.ratelimit import RateLimiter, rate_limit_key
from deriverse_journal.reconstruct.positions import PositionState, enrich_fills, final_positions
from deriverse_journal.storage.fill_store import FillStore, SqliteFillStore
from deriverse_journal.storage.sqlite_store import SYNC_ERROR, SYNC_IDLE, SYNC_SYNCING

logger = logging.getLogger(__name__)

DEFAULT_JOURNAL_LIMIT = 100


@dataclass(frozen=True)
class MetricsBundle:
    core: CoreMetrics
    long_short: LongShortMetrics
    risk: RiskMetrics
    pnl_series: list[PnlPoint]
    drawdown: DrawdownSummary
    fees: FeeComposition
    sessions: SessionPerformance
    calendar: CalendarBreakdown
    journal: list[JournalRow]
    positions: dict[int, PositionState] = field(default_factory=dict)


@dataclass(frozen=True)
class SyncResult:
    wallet_id: str
    inserted_count: int
    decoded_fills: int
    skipped_records: int
    transactions: int
    total_fills: int


@dataclass(frozen=True)
class ServiceSettings:
    scales: DecoderScales = field(default_factory=DecoderScales)
    fallback: InstrumentFallback = field(default_factory=InstrumentFallback)
    heuristic_fallback: bool = False
    signatures_limit: int | None = None
    journal_limit: int = DEFAULT_JOURNAL_LIMIT


def compute_metrics_bundle(
    fills: Iterable[Fill],
    registry: InstrumentRegistry | None = None,
    journal_limit: int | None = DEFAULT_JOURNAL_LIMIT,
) -> MetricsBundle:
    """Aggregate an enriched fill history into every dashboard metric."""
    registry = registry or InstrumentRegistry()
    fill_list = list(fills)
    return MetricsBundle(
        core=compute_core_metrics(fill_list),
        long_short=compute_long_short(fill_list),
        risk=compute_risk_metrics(fill_list),
        pnl_series=compute_pnl_series(fill_list),
        drawdown=compute_drawdown(fill_list),
        fees=compute_fee_composition(fill_list, registry),
        sessions=compute_session_performance(fill_list),
        calendar=compute_calendar_breakdown(fill_list),
        journal=format_journal(fill_list, registry, limit=journal_limit),
        positions=final_positions(fill_list),
    )


class JournalService:
    def __init__(
        self,
        *,
        reader: LedgerReader,
        store: FillStore,
        registry: InstrumentRegistry | None = None,
        limiter: RateLimiter | None = None,
        settings: ServiceSettings | None = None,
    ) -> None:
        self.reader = reader
        self.store = store
        self.registry = registry or InstrumentRegistry()
        self.limiter = limiter or RateLimiter()
        self.settings = settings or ServiceSettings()

    def sync(
        self,
        wallet_id: str,
        *,
        client_address: str | None = None,
        limit: int | None = None,
    ) -> SyncResult:
        self._admit(wallet_id, client_address)
        self.store.record_sync_state(wallet_id, SYNC_SYNCING)
        try:
            transactions = self.reader.list_transactions(
                wallet_id, limit or self.settings.signatures_limit
            )
            correlated = transactions_to_fills(
                transactions,
                wallet_id=wallet_id,
                scales=self.settings.scales,
                registry=self.registry,
                fallback=self.settings.fallback,
                heuristic_fallback=self.settings.heuristic_fallback,
            )
            inserted = self.store.upsert(correlated.fills)
            enriched = enrich_fills(self.store.query(wallet_id))
            self.store.update_realized_pnl(enriched)
        except Exception as exc:
            logger.warning("Sync failed for %s: %s", wallet_id, exc)
            self.store.record_sync_state(wallet_id, SYNC_ERROR, error_message=str(exc))
            raise

        newest = correlated.fills[-1].tx_signature if correlated.fills else None
        self.store.record_sync_state(
            wallet_id,
            SYNC_IDLE,
            total_fills=len(enriched),
            last_signature=newest,
            synced_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Synced %s: %d transactions, %d fills decoded, %d new, %d records skipped",
            wallet_id,
            correlated.transactions,
            len(correlated.fills),
            inserted,
            correlated.skipped_records,
        )
        return SyncResult(
            wallet_id=wallet_id,
            inserted_count=inserted,
            decoded_fills=len(correlated.fills),
            skipped_records=correlated.skipped_records,
            transactions=correlated.transactions,
            total_fills=len(enriched),
        )

    def get_analytics(self, wallet_id: str, filters: AnalyticsFilters | None = None) -> MetricsBundle:
        """Metrics over the wallet's history.

        P&L is recomputed over the full history first so that date and symbol
        filters select fills without changing their realized P&L.
        """
        filters = filters or AnalyticsFilters()
        enriched = self.enriched_history(wallet_id)
        selected = [fill for fill in enriched if filters.accepts(fill, self.registry.matches)]
        return compute_metrics_bundle(selected, self.registry, self.settings.journal_limit)

    def enriched_history(self, wallet_id: str) -> list[Fill]:
        return enrich_fills(self.store.query(wallet_id))

    def sync_state(self, wallet_id: str) -> dict | None:
        return self.store.sync_state(wallet_id)

    def _admit(self, wallet_id: str, client_address: str | None) -> None:
        key = rate_limit_key(wallet_id, client_address)
        decision = self.limiter.check(key)
        if decision.allowed:
            return
        retry_after = decision.retry_after_seconds(self.limiter.now_ms())
        logger.info("Rate limited %s; retry after %ss", key, retry_after)
        raise RateLimited(retry_after, decision.reset_time_ms)


def build_service(app_config: AppConfig, env: Mapping[str, str] | None = None) -> JournalService:
    """Wire the SQLite store, Solana reader and limiter from configuration."""
    env = merged_env(app_config.app.env_path) if env is None else env
    limits = app_config.rate_limit
    return JournalService(
        reader=SolanaLedgerReader(app_config.rpc_config(env)),
        store=SqliteFillStore(app_config.app.db_path),
        registry=InstrumentRegistry.from_overrides(app_config.instruments),
        limiter=RateLimiter(
            max_requests=limits.max_requests,
            window_ms=int(limits.window_seconds * 1000),
        ),
        settings=ServiceSettings(
            scales=app_config.decoder.scales(),
            fallback=app_config.decoder.fallback(),
            heuristic_fallback=app_config.decoder.heuristic_fallback,
            signatures_limit=app_config.rpc.signatures_limit,
            journal_limit=app_config.analytics.journal_limit,
        ),
    )
