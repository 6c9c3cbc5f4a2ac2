# shopwatch/app.py - FastAPI app shared by every service: CORS, metrics, errors, health
import logging
from typing import Callable, Iterable, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .cache import Cache, TTLCache
from .clients import PeerClient
from .database import connection_stats
from .errors import InternalError, ServiceError, ValidationError
from .health import check_health
from .metrics import MetricsRegistry
from .middleware import InstrumentationMiddleware

logger = logging.getLogger(__name__)

MetricsRefresher = Callable[[Database, MetricsRegistry], None]


def refresh_connection_gauges(db: Database, metrics: MetricsRegistry) -> None:
    stats = connection_stats(db)
    metrics.set("database_connections_active", None, stats["current"])
    if "database_connections_total" in metrics:
        metrics.set("database_connections_total", None, stats["available"])


def _validation_error(exc: RequestValidationError) -> ValidationError:
    missing, invalid = [], []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or "body"
        if err.get("type") == "missing":
            missing.append(field)
        else:
            invalid.append(f"{field}: {err.get('msg')}")
    if missing:
        return ValidationError.missing(missing)
    return ValidationError(f"Invalid request: {'; '.join(invalid)}")


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        err = _validation_error(exc)
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(PyMongoError)
    async def database_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
        logger.error("database error on %s %s: %s", request.method, request.url.path, exc)
        return await service_error_handler(request, InternalError(str(exc)))


def create_app(service_name: str, db: Database, metrics: MetricsRegistry,
               cache: Optional[Cache] = None,
               peers: Optional[Mapping[str, PeerClient]] = None,
               health_timeout: float = 2.0,
               refreshers: Iterable[MetricsRefresher] = (refresh_connection_gauges,)) -> FastAPI:
    app = FastAPI(title=service_name)
    app.state.service_name = service_name
    app.state.db = db
    app.state.metrics = metrics
    app.state.cache = cache if cache is not None else TTLCache(metrics)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(InstrumentationMiddleware, metrics=metrics)
    install_error_handlers(app)

    refreshers = list(refreshers)

    @app.get("/health")
    def health():
        return check_health(service_name, db, metrics, peers, peer_timeout=health_timeout)

    @app.get("/metrics")
    def metrics_endpoint():
        for refresh in refreshers:
            refresh(db, metrics)
        return Response(content=metrics.render(), media_type=metrics.content_type)

    return app
