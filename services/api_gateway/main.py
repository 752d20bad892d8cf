# services/api_gateway/main.py
"""FastAPI gateway receiving bank SMS webhooks and committing them exactly once.

* **POST    /api/webhook/sms**   deliveries from the SMS gateway (bearer auth).
* **OPTIONS /api/webhook/sms**   preflight.
* **GET     /health**            liveness + database ping.
* **GET     /api/transactions**, **/api/metrics/...**, **/api/parse-errors**
  read accessors for the dashboard.

DTO-models live in ``services.api_gateway.schemas``, request orchestration in
``services.api_gateway.pipeline``; this module only wires HTTP to them.
"""
from __future__ import annotations

import datetime as _dt
import hmac
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response

from db.gateway import PersistenceGateway
from db.models import Base
from db.session import create_engine, create_sessionmaker
from libs.cache import TTLCache
from libs.config import Settings, get_settings
from libs.errors import StorageError
from libs.log import configure_logging
from libs.models import (
    ParseFailureFilter,
    Period,
    TransactionFilter,
    TxnStatus,
)
from libs.sentry import init_sentry, sentry_capture
from services.api_gateway.metrics import start_metrics_server
from services.api_gateway.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)

RELEASE = "api_gateway@0.1.0"
WEBHOOK_PATH = "/api/webhook/sms"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "3600",
}


# ---------------------------------------------------------------------------#
# Lifespan: engine, cache, sweeper, gateway, pipeline                        #
# ---------------------------------------------------------------------------#
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings or get_settings()
    app.state.settings = settings
    configure_logging(settings)
    init_sentry(release=RELEASE, env=settings.environment)

    if not settings.webhook_secret:
        logger.error("WEBHOOK_SECRET is not set - every delivery will be rejected")

    engine = create_engine(settings)
    if settings.create_schema:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    cache = TTLCache(default_ttl=settings.cache_ttl_seconds)
    cache.start_sweeper(settings.cache_sweep_interval_seconds)

    gateway = PersistenceGateway(
        create_sessionmaker(engine),
        cache,
        aggregate_timeout=settings.aggregate_query_timeout_seconds,
        aggregate_ttl=settings.cache_ttl_seconds,
        stale_ttl=settings.cache_stale_ttl_seconds,
        timezone=settings.timezone,
    )
    app.state.cache = cache
    app.state.gateway = gateway
    app.state.pipeline = IngestionPipeline(gateway, webhook_secret=settings.webhook_secret)
    logger.info("API Gateway started")
    try:
        yield
    finally:
        logger.info("API Gateway shutting down…")
        await cache.stop_sweeper()
        await engine.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    app = FastAPI(title="SMS Ledger API Gateway", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    _register_routes(app)
    return app


# ---------------------------------------------------------------------------#
# Dependencies                                                               #
# ---------------------------------------------------------------------------#
def get_gateway(request: Request) -> PersistenceGateway:
    return request.app.state.gateway


def require_reader(request: Request) -> None:
    """Same bearer secret as the webhook protects the dashboard reads."""
    secret = request.app.state.settings.webhook_secret
    if not secret:
        raise HTTPException(status_code=500, detail="Server configuration error")
    header = request.headers.get("Authorization") or ""
    if not header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")
    if not hmac.compare_digest(header[len("Bearer "):].encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Invalid token")


def _page_size(request: Request, limit: Optional[int]) -> int:
    settings: Settings = request.app.state.settings
    if limit is None:
        return settings.default_page_size
    return min(limit, settings.max_page_size)


def _storage_failure(exc: StorageError) -> HTTPException:
    sentry_capture(exc)
    logger.error("Dashboard read failed: %s", exc)
    return HTTPException(status_code=500, detail=exc.message)


# ---------------------------------------------------------------------------#
# Routes                                                                     #
# ---------------------------------------------------------------------------#
def _register_routes(app: FastAPI) -> None:
    @app.options(WEBHOOK_PATH)
    async def webhook_preflight() -> Response:
        return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)

    @app.post(WEBHOOK_PATH)
    async def post_sms_webhook(request: Request) -> JSONResponse:  # noqa: D401
        """Hand the raw request to the pipeline and echo its outcome."""
        pipeline: IngestionPipeline = request.app.state.pipeline
        outcome = await pipeline.handle(
            authorization=request.headers.get("Authorization"),
            content_type=request.headers.get("Content-Type"),
            body=await request.body(),
        )
        return JSONResponse(
            content=outcome.response.to_json(),
            status_code=outcome.http_status,
            headers=CORS_HEADERS,
        )

    @app.get("/health", status_code=status.HTTP_200_OK, response_model=None)
    async def health(
        gateway: PersistenceGateway = Depends(get_gateway),
    ) -> Dict[str, Any] | JSONResponse:  # noqa: D401
        """Readiness check: ``SELECT 1`` against the database."""
        try:
            await gateway.ping()
        except StorageError as exc:
            sentry_capture(exc)
            logger.warning("Health check failed: %s", exc)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "db_down"},
            )
        return {"status": "ok"}

    @app.get("/api/transactions", dependencies=[Depends(require_reader)])
    async def list_transactions(
        request: Request,
        start_date: Optional[_dt.date] = Query(None, alias="startDate"),
        end_date: Optional[_dt.date] = Query(None, alias="endDate"),
        txn_status: Optional[TxnStatus] = Query(None, alias="status"),
        limit: Optional[int] = Query(None, ge=1),
        offset: int = Query(0, ge=0),
        gateway: PersistenceGateway = Depends(get_gateway),
    ) -> list[dict[str, Any]]:
        filters = TransactionFilter(
            start_date=start_date,
            end_date=end_date,
            status=txn_status,
            limit=_page_size(request, limit),
            offset=offset,
        )
        try:
            records = await gateway.list_transactions(filters)
        except StorageError as exc:
            raise _storage_failure(exc) from exc
        return [r.model_dump(mode="json", by_alias=True) for r in records]

    @app.get("/api/metrics", dependencies=[Depends(require_reader)])
    async def range_metrics(
        start: _dt.date,
        end: _dt.date,
        gateway: PersistenceGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        if start > end:
            raise HTTPException(status_code=400, detail="start must not be after end")
        try:
            aggregate = await gateway.get_aggregate(start, end)
        except StorageError as exc:
            raise _storage_failure(exc) from exc
        return aggregate.model_dump(mode="json", by_alias=True)

    @app.get("/api/metrics/{period}", dependencies=[Depends(require_reader)])
    async def period_metrics(
        period: Period,
        reference: Optional[_dt.date] = None,
        gateway: PersistenceGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        try:
            aggregate = await gateway.get_period_aggregate(period, reference)
        except StorageError as exc:
            raise _storage_failure(exc) from exc
        return aggregate.model_dump(mode="json", by_alias=True)

    @app.get("/api/parse-errors", dependencies=[Depends(require_reader)])
    async def list_parse_errors(
        request: Request,
        resolved: Optional[bool] = None,
        limit: Optional[int] = Query(None, ge=1),
        offset: int = Query(0, ge=0),
        gateway: PersistenceGateway = Depends(get_gateway),
    ) -> list[dict[str, Any]]:
        filters = ParseFailureFilter(
            resolved=resolved, limit=_page_size(request, limit), offset=offset
        )
        try:
            records = await gateway.list_parse_failures(filters)
        except StorageError as exc:
            raise _storage_failure(exc) from exc
        return [r.model_dump(mode="json", by_alias=True) for r in records]

    @app.post("/api/parse-errors/{failure_id}/resolve", dependencies=[Depends(require_reader)])
    async def resolve_parse_error(
        failure_id: uuid.UUID,
        gateway: PersistenceGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        try:
            record = await gateway.resolve_parse_failure(failure_id)
        except StorageError as exc:
            raise _storage_failure(exc) from exc
        if record is None:
            raise HTTPException(status_code=404, detail="Parse error not found")
        return record.model_dump(mode="json", by_alias=True)


app = create_app()


# ---------------------------------------------------------------------------#
# Entrypoint                                                                 #
# ---------------------------------------------------------------------------#
def main() -> None:  # pragma: no cover - CLI
    settings = get_settings()
    configure_logging(settings)
    start_metrics_server(settings.metrics_port)
    # uvicorn installs its own SIGTERM/SIGINT handlers and drains the lifespan
    uvicorn.run(
        "services.api_gateway.main:app",
        host=settings.api_host,
        port=settings.api_port,
        lifespan="on",
    )


if __name__ == "__main__":  # pragma: no cover
    main()
