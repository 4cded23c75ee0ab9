"""
Main FastAPI application
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import time
from prometheus_client import make_asgi_app
import uuid

from vera.config import settings
from vera.core.database import init_db, close_db, async_session
from vera.core.exceptions import VeraException
from vera.core.logging import setup_logging, log_context
from vera.core.metrics import REQUEST_COUNT, REQUEST_DURATION
from vera.api.v1.api import api_router
from vera.schemas.response import ErrorDetail, ErrorResponse
from vera.services.paystack import paystack_client
from vera.services.resale import ResaleMarketplace
from vera.services.sweeper import ResaleExpirySweeper

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()

    sweeper = ResaleExpirySweeper(async_session, ResaleMarketplace(paystack_client))
    app.state.sweeper = sweeper
    if settings.RESALE_SWEEPER_ENABLED:
        sweeper.start()

    if not paystack_client.is_configured:
        if settings.paystack_bypass_allowed:
            logger.warning("PAYSTACK_SECRET_KEY is not set, paid tickets are issued without payment")
        else:
            logger.warning("PAYSTACK_SECRET_KEY is not set, paid checkouts will fail")

    yield

    logger.info("Shutting down application")
    sweeper.shutdown()
    await paystack_client.close()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description="Event ticket issuance, dynamic pricing, resale and payment reconciliation",
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def track_requests(request: Request, call_next):
    """
    Track request metrics and add request ID
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Label by route template so ids don't explode cardinality
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    REQUEST_COUNT.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    REQUEST_DURATION.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(duration)

    return response


def _error_response(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details or {}))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.exception_handler(VeraException)
async def vera_exception_handler(request: Request, exc: VeraException):
    if exc.status_code >= 500:
        logger.error(
            f"{exc.code}: {exc.message}",
            extra=log_context(path=request.url.path, code=exc.code, details=exc.details)
        )
    else:
        logger.info(
            f"{exc.code}: {exc.message}",
            extra=log_context(path=request.url.path, code=exc.code)
        )
    return _error_response(exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(404)
async def not_found_handler(request: Request, exc):
    return _error_response(404, "NOT_FOUND", "The requested resource was not found")


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc):
    logger.error(f"Internal server error: {exc}", exc_info=True)
    return _error_response(500, "INTERNAL_ERROR", "An internal server error occurred")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.APP_ENV,
        "api_docs": "/docs" if settings.DEBUG else None
    }


app.include_router(api_router, prefix=settings.API_PREFIX)

if settings.PROMETHEUS_ENABLED:
    app.mount("/metrics", make_asgi_app())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "vera.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
