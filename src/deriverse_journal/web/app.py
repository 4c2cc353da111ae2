from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any

from fastapi import FastAPI, HTTPException, Request

from deriverse_journal.config.app_config import load_app_config
from deriverse_journal.errors import RateLimited, UpstreamUnavailable
from deriverse_journal.models import AnalyticsFilters
from deriverse_journal.ratelimit import client_address_from_headers
from deriverse_journal.serialize import to_jsonable
from deriverse_journal.service import JournalService, build_service

logger = logging.getLogger(__name__)


def create_app(service: JournalService | None = None) -> FastAPI:
    app = FastAPI(title="Deriverse Journal")
    app.state.service = service
    app.state.sweep_interval_seconds = 60.0

    @app.on_event("startup")
    async def _startup() -> None:
        if app.state.service is None:
            app_config = load_app_config()
            app.state.service = build_service(app_config)
            app.state.sweep_interval_seconds = app_config.rate_limit.sweep_interval_seconds
        app.state.service.limiter.start_sweeper(app.state.sweep_interval_seconds)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if app.state.service is not None:
            app.state.service.limiter.stop_sweeper()

    @app.post("/api/sync")
    async def sync_api(request: Request) -> dict[str, Any]:
        body = await _json_body(request)
        wallet = str(body.get("wallet") or request.query_params.get("wallet") or "").strip()
        if not wallet:
            raise HTTPException(status_code=400, detail="Wallet address is required.")
        peer = request.client.host if request.client else None
        client_address = client_address_from_headers(request.headers, peer)
        service = _service(app)
        try:
            result = await asyncio.to_thread(service.sync, wallet, client_address=client_address)
        except RateLimited as exc:
            raise HTTPException(
                status_code=429,
                detail="Too many sync requests. Try again later.",
                headers={"Retry-After": str(exc.retry_after_seconds)},
            ) from exc
        except UpstreamUnavailable as exc:
            raise HTTPException(status_code=502, detail=f"Upstream unavailable: {exc}") from exc
        return {
            "wallet": result.wallet_id,
            "inserted": result.inserted_count,
            "decoded": result.decoded_fills,
            "skipped": result.skipped_records,
            "transactions": result.transactions,
            "total_fills": result.total_fills,
        }

    @app.get("/api/analytics/{wallet}")
    async def analytics_api(request: Request, wallet: str) -> dict[str, Any]:
        filters = AnalyticsFilters(
            symbol=request.query_params.get("symbol") or None,
            start_date=_parse_date(request.query_params.get("start_date"), "start_date"),
            end_date=_parse_date(request.query_params.get("end_date"), "end_date"),
        )
        service = _service(app)
        try:
            bundle = await asyncio.to_thread(service.get_analytics, wallet, filters)
        except UpstreamUnavailable as exc:
            raise HTTPException(status_code=502, detail=f"Store unavailable: {exc}") from exc
        return {"wallet": wallet, "filters": to_jsonable(filters), **to_jsonable(bundle)}

    @app.get("/api/sync-state/{wallet}")
    def sync_state_api(wallet: str) -> dict[str, Any]:
        try:
            state = _service(app).sync_state(wallet)
        except UpstreamUnavailable as exc:
            raise HTTPException(status_code=502, detail=f"Store unavailable: {exc}") from exc
        if state is None:
            raise HTTPException(status_code=404, detail="Wallet has never been synced.")
        return state

    return app


def _service(app: FastAPI) -> JournalService:
    service = app.state.service
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialised.")
    return service


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body must be JSON.") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
    return body


def _parse_date(value: str | None, name: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value}") from exc


app = create_app()


def main() -> None:
    import uvicorn

    from deriverse_journal.logs import configure_logging

    app_config = load_app_config()
    configure_logging(app_config.app.log_level)
    uvicorn.run(
        "deriverse_journal.web.app:app",
        host=app_config.app.host,
        port=app_config.app.port,
        reload=app_config.app.reload,
    )


if __name__ == "__main__":
    main()
