"""
Power Control API - FastAPI application for GPU power-limit management.

Routes under ``/api`` require an ``X-API-Key`` header matching the configured key:
- GET  /api/gpus          refreshed inventory of every GPU
- GET  /api/gpus/{index}  refreshed record for one GPU
- POST /api/power         apply an 'all' or 'manual' power limit request

Operational routes (no key required): /health, /ready, /metrics.
Errors are always returned as ``{"error": <message>}``.
"""

import hmac
import re
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from common.observability import bootstrap_observability, get_logger
from config import PowerControlConfig

from . import tools
from .errors import AuthError, PowerControlError, RequestFormatError
from .power_control_engine import PowerControlEngine
from .schemas import PowerLimitRequest

logger = get_logger(__name__)

INVALID_REQUEST_FORMAT = "Invalid request format"
_INDEX_PATTERN = re.compile(r"[+-]?[0-9]+")


def get_engine(request: Request) -> PowerControlEngine:
    return request.app.state.engine


def require_api_key(request: Request, x_api_key: str | None = Header(None)) -> None:
    """Reject the request unless ``X-API-Key`` matches the configured key."""
    expected = request.app.state.api_key
    if not x_api_key or not hmac.compare_digest(x_api_key.encode("utf-8"), expected.encode("utf-8")):
        logger.debug("Rejected %s %s: invalid API key", request.method, request.url.path)
        raise AuthError("Invalid API key")


async def read_body(request: Request) -> bytes:
    return await request.body()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(engine: PowerControlEngine, api_key: str, *, log_level: str = "INFO") -> FastAPI:
    """Build the API around an engine owned by the caller."""
    if not api_key:
        raise ValueError("an API key is required to serve the power control API")
    bootstrap_observability("power_control_api", level=log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Power control API starting up")
        if not engine.initialized:
            engine.initialize()
        yield
        logger.info("Power control API shutting down")
        engine.shutdown()

    app = FastAPI(title="NVIDIA Power Control", lifespan=lifespan)
    app.state.engine = engine
    app.state.api_key = api_key

    app.middleware("http")(engine.metrics.request_middleware)

    @app.exception_handler(PowerControlError)
    async def power_control_error_handler(request: Request, exc: PowerControlError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _error(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error(400, INVALID_REQUEST_FORMAT)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/ready")
    def ready(engine: PowerControlEngine = Depends(get_engine)):
        """Readiness check endpoint."""
        return {"ready": engine.initialized}

    @app.get("/metrics")
    def metrics(engine: PowerControlEngine = Depends(get_engine)):
        """Prometheus metrics endpoint."""
        return Response(engine.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    api = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])

    @api.get("/gpus")
    def list_gpus(engine: PowerControlEngine = Depends(get_engine)):
        """Refresh and return every GPU."""
        return tools.list_gpus(engine)

    @api.get("/gpus/{index}")
    def get_gpu(index: str, engine: PowerControlEngine = Depends(get_engine)):
        """Refresh and return one GPU."""
        if not _INDEX_PATTERN.fullmatch(index):
            raise RequestFormatError("Invalid GPU index")
        return tools.get_gpu(engine, int(index))

    @api.post("/power")
    def set_power_limits(body: bytes = Depends(read_body), engine: PowerControlEngine = Depends(get_engine)):
        """Apply power limits, refresh the inventory, and return the updated GPUs."""
        # validated only after require_api_key has passed
        try:
            payload = PowerLimitRequest.model_validate_json(body)
        except ValidationError as exc:
            raise RequestFormatError(INVALID_REQUEST_FORMAT) from exc
        outcome = tools.apply_power_request(engine, payload)
        return outcome.to_list()

    app.include_router(api)
    return app


def run_server(engine: PowerControlEngine, config: PowerControlConfig) -> None:
    """Serve the API until interrupted."""
    import uvicorn

    app = create_app(engine, config.api_key, log_level=config.log_level)
    logger.info("Starting API server on port %d", config.api_port)
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level=config.log_level.lower())
