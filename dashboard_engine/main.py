import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .aggregator import Aggregator
from .boundary import BoundaryClock
from .cache import CacheStore
from .config import Settings, settings
from .domains import InMemoryAllowList
from .errors import AllSourcesUnavailable, InvalidQuery
from .logging_config import configure_logging, get_logger
from .metrics import default_metrics
from .orchestrator import DashboardService
from .simulated_sources import SourceRegistry
from .singleflight import SingleFlight
from .sources import DirectoryAdapter, ErpAdapter, OperationalStoreAdapter

configure_logging()
logger = get_logger(__name__)


class SeedPayload(BaseModel):
    payload: Dict[str, Any]


class AvailabilityPayload(BaseModel):
    available: bool


class RefreshPayload(BaseModel):
    query: Optional[Dict[str, Any]] = None


class DomainPayload(BaseModel):
    domain: str
    database: Optional[str] = None
    created_by: Optional[str] = None


def create_service(
    config: Settings,
    registry: SourceRegistry,
    allow_list: InMemoryAllowList,
    clock: Optional[BoundaryClock] = None,
) -> DashboardService:
    clock = clock or BoundaryClock(config.boundary_hour, config.boundary_minute)
    adapters = [
        DirectoryAdapter(
            registry.directory,
            base_dn=config.directory_base_dn,
            filter_expr=config.directory_filter,
            retry_attempts=config.directory_retry_attempts,
            retry_backoff_seconds=config.directory_retry_backoff_seconds,
            retry_backoff_max_seconds=config.directory_retry_backoff_max_seconds,
        ),
        ErpAdapter(registry.erp, schema_lookup=allow_list.schemas_for),
        OperationalStoreAdapter(registry.operational),
    ]
    aggregator = Aggregator(
        adapters,
        default_metrics(),
        allow_list=allow_list,
        timeout_seconds=config.source_timeout_seconds,
        now_fn=clock.now,
    )
    return DashboardService(CacheStore(), SingleFlight(), aggregator, clock)


app = FastAPI(
    title="Dashboard Metrics Service",
    version="0.1.0",
    description="Email dashboard metrics aggregated from directory, ERP and mailbox stores "
    "with a daily reporting-cycle cache.",
)

allow_list = InMemoryAllowList()
for _domain in settings.allowed_domains:
    allow_list.add(_domain, database=settings.erp_schema)
sources = SourceRegistry(settings.allowed_domains, settings.default_seed_records, settings.erp_schema)
service = create_service(settings, sources, allow_list)


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(InvalidQuery)
async def invalid_query_handler(request: Request, exc: InvalidQuery) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(AllSourcesUnavailable)
async def all_sources_handler(request: Request, exc: AllSourcesUnavailable) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": "All data sources are unavailable", "sources": exc.failures},
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/dashboard")
async def get_dashboard(
    report: str = "overview",
    domain: Optional[str] = None,
    business_type: Optional[str] = None,
    period: str = "current_fiscal_year",
    user_scope: Optional[str] = None,
) -> dict:
    query = {
        "report": report,
        "domain": domain,
        "business_type": business_type,
        "period": period,
        "user_scope": user_scope,
    }
    result = await service.get_dashboard(query)
    return {"success": True, "data": result.model_dump(mode="json")}


@app.get("/dashboard/cache")
async def cache_status() -> dict:
    return service.get_cache_status()


@app.post("/dashboard/refresh")
async def refresh_dashboard(payload: Optional[RefreshPayload] = None) -> dict:
    if payload is None or payload.query is None:
        cleared = service.invalidate()
        return {"status": "invalidated", "entries_cleared": cleared}
    result = await service.refresh(payload.query)
    return {"status": "refreshed", "data": result.model_dump(mode="json")}


@app.get("/sources/stats")
async def source_stats() -> dict:
    return {"sources": sources.stats(), "cached": service.source_report()}


@app.post("/sources/{source}/seed")
async def seed_source(source: str, payload: SeedPayload) -> dict:
    try:
        record = sources.add_to_source(source, payload.payload)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"inserted": record}


@app.post("/sources/{source}/availability")
async def set_source_availability(source: str, payload: AvailabilityPayload) -> dict:
    try:
        sources.set_available(source, payload.available)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    logger.info("source_availability_changed", source=source, available=payload.available)
    return {"source": source, "available": payload.available}


@app.get("/domains")
async def list_domains() -> dict:
    return {"domains": [d.model_dump(mode="json") for d in allow_list.list()]}


@app.post("/domains", status_code=201)
async def add_domain(payload: DomainPayload) -> dict:
    try:
        record = allow_list.add(payload.domain, payload.database, payload.created_by)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    # scope changed; every cached dashboard may now be wrong
    service.invalidate()
    return {"domain": record.model_dump(mode="json")}


@app.delete("/domains/{domain}")
async def remove_domain(domain: str) -> dict:
    if not allow_list.remove(domain):
        raise HTTPException(status_code=404, detail=f"Domain '{domain}' not found")
    service.invalidate()
    return {"removed": domain}
