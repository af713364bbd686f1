# FILE: taskpal/service_http.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.cors import CORSMiddleware

from .catalog import Catalog
from .config import Settings, get_settings
from .errors import SourceUnavailable, TaskpalError
from .logging import RequestLogMiddleware, bind, configure_json_logging
from .metrics import LedgerMetrics
from .middleware import MetricsMiddleware
from .service import LedgerService
from .storage import LedgerStore
from .task_source import TaskSource


# ---------------------------------------------------------------------------
# Pydantic I/O models
# ---------------------------------------------------------------------------


class AccessoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: Optional[str] = Field(default=None, alias="userId", max_length=256)
    accessory_id: Optional[str] = Field(default=None, alias="accessoryId", max_length=256)


class PurchaseResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    points: int
    owned_accessories: List[str] = Field(alias="ownedAccessories")


class EquipResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    equipped_accessories: List[str] = Field(alias="equippedAccessories")
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[LedgerStore] = None,
    source: Optional[TaskSource] = None,
    catalog: Optional[Catalog] = None,
    registry: Optional[CollectorRegistry] = None,
) -> FastAPI:
    """
    Build the HTTP surface over LedgerService.

    - /api/state: sync with the task source and return ledger + catalog;
    - /api/buy-accessory, /api/equip-accessory, /api/unequip-accessory;
    - /api/catalog, /api/test-connection;
    - /healthz, /readyz, /version, /metrics.

    Collaborators can be injected for tests; otherwise they are built from
    settings. Each app gets its own Prometheus registry unless one is passed.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="taskpal",
        version=settings.version,
        openapi_url="/openapi.json" if settings.enable_docs else None,
        docs_url="/docs" if settings.enable_docs else None,
        redoc_url=None,
    )

    metrics = LedgerMetrics(
        registry=registry if registry is not None else CollectorRegistry(),
        enabled=settings.metrics_enabled,
        version=settings.version,
    )
    service = LedgerService(settings, store=store, source=source, catalog=catalog, metrics=metrics)
    app.state.service = service
    app.state.metrics = metrics

    logger = logging.getLogger("taskpal.http")

    # Middlewares: outermost added last
    app.add_middleware(MetricsMiddleware, metrics=metrics)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "X-Taskpal-Config-Hash"],
    )
    app.add_middleware(RequestLogMiddleware)

    config_hash = settings.config_hash()

    @app.middleware("http")
    async def config_hash_header(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Taskpal-Config-Hash"] = config_hash
        return response

    # -----------------------------------------------------------------------
    # Error mapping
    # -----------------------------------------------------------------------

    @app.exception_handler(TaskpalError)
    async def taskpal_error_handler(request: Request, exc: TaskpalError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "request failed",
                extra={"code": exc.code, "path": request.url.path},
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    # -----------------------------------------------------------------------
    # Endpoints: health / ready / version / metrics
    # -----------------------------------------------------------------------

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return service.health()

    @app.get("/readyz")
    def readyz() -> Dict[str, Any]:
        return {"ready": True, "version": settings.version}

    @app.get("/version")
    def version() -> Dict[str, Any]:
        return {
            "version": settings.version,
            "configHash": config_hash,
            "configOrigin": settings.config_origin,
        }

    @app.get("/metrics")
    def prom_metrics() -> Response:
        return Response(metrics.render(), media_type=metrics.content_type)

    # -----------------------------------------------------------------------
    # Endpoints: ledger
    # -----------------------------------------------------------------------

    @app.get("/api/state")
    def get_state(user_id: Optional[str] = Query(default=None, alias="userId")) -> Dict[str, Any]:
        bind(user_id=user_id, op="state")
        view = service.state(user_id)
        return view.to_payload()

    @app.get("/api/catalog")
    def get_catalog() -> Dict[str, Any]:
        return {"accessoriesCatalog": service.catalog.to_payload()}

    @app.post("/api/buy-accessory", response_model=PurchaseResponse, response_model_by_alias=True)
    def buy_accessory(req: AccessoryRequest) -> Dict[str, Any]:
        bind(user_id=req.user_id, accessory_id=req.accessory_id, op="purchase")
        result = service.purchase(req.user_id, req.accessory_id)
        return result.to_payload()

    @app.post("/api/equip-accessory", response_model=EquipResponse, response_model_by_alias=True, response_model_exclude_none=True)
    def equip_accessory(req: AccessoryRequest) -> Dict[str, Any]:
        bind(user_id=req.user_id, accessory_id=req.accessory_id, op="equip")
        equipped = service.equip(req.user_id, req.accessory_id)
        return {"equippedAccessories": equipped}

    @app.post("/api/unequip-accessory", response_model=EquipResponse, response_model_by_alias=True)
    def unequip_accessory(req: AccessoryRequest) -> Dict[str, Any]:
        bind(user_id=req.user_id, accessory_id=req.accessory_id, op="unequip")
        equipped = service.unequip(req.user_id, req.accessory_id)
        return {"equippedAccessories": equipped, "message": "Accessory unequipped"}

    @app.get("/api/test-connection")
    def test_connection() -> JSONResponse:
        try:
            report = service.connection_report()
        except SourceUnavailable as exc:
            logger.warning("connection test failed", extra={"reason": exc.message})
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "error",
                    "message": exc.message,
                    "code": exc.code,
                    "suggestion": "Check your API token, database ID, and sharing permissions",
                },
            )
        return JSONResponse(content=report)

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_json_logging(level=settings.log_level, include_uvicorn=True)
    app = create_app(settings)
    try:
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    finally:
        app.state.service.close()


if __name__ == "__main__":
    main()
