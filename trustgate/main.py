import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from trustgate.api.v1.api import api_router
from trustgate.config import settings
from trustgate.core.errors import TrustEngineError
from trustgate.logging_config import setup_logging
from trustgate.middleware.metrics import PrometheusMiddleware, metrics_endpoint, set_app_info
from trustgate.middleware.request_logging import RequestLoggingMiddleware

# ── Initialize structured logging ──
setup_logging()

logger = logging.getLogger("trustgate.api")

app = FastAPI(
    title=settings.APP_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# Request logging middleware – request ID, timing, tenant context
app.add_middleware(RequestLoggingMiddleware)

# Prometheus metrics middleware – request count, latency, in-progress
app.add_middleware(PrometheusMiddleware)


@app.exception_handler(TrustEngineError)
async def trust_engine_error_handler(request: Request, exc: TrustEngineError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health")
def health_check():
    from trustgate.db.session import get_pool_status

    return {"status": "ok", "env": settings.APP_ENV, "db_pool": get_pool_status()}


# Prometheus metrics endpoint
app.add_route("/metrics", metrics_endpoint)
set_app_info(version="0.1.0", env=settings.APP_ENV)
