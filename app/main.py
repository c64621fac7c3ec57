import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.v1.router import api_v1_router
from app.core.config import settings, validate_settings_for_production
from app.core.exceptions import GatewayError, MalformedRequestError
from app.core.logging import setup_logging
from app.core.metrics import PrometheusMiddleware, metrics_response
from app.core.middleware import RequestLoggingMiddleware
from app.core.sentry import init_sentry
from app.db.postgres import async_session_factory, engine
from app.gateway.billing import BillingService
from app.gateway.gateway import ChatGateway
from app.gateway.key_pool import KeyPool
from app.gateway.types import Backend

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    logger.info("Starting inference gateway...")

    pool = KeyPool(
        fallback_keys={
            Backend.FLASH: settings.flash_fallback_key,
            Backend.LITE: settings.lite_fallback_key,
            Backend.PRO: settings.pro_fallback_key,
        },
        session_factory=async_session_factory,
        cooldown_seconds=settings.rate_limit_cooldown_seconds,
    )
    await pool.start(settings.key_pool_refresh_seconds)

    billing = BillingService.from_settings(settings, async_session_factory)
    app.state.key_pool = pool
    app.state.gateway = ChatGateway.from_settings(settings, pool, billing)
    logger.info("Key pool ready: %s", pool.get_stats())

    yield

    # Shutdown
    await pool.stop()
    await engine.dispose()
    logger.info("Inference gateway shut down")


app = FastAPI(
    title="Inference Gateway",
    description="Metered, OpenAI-compatible chat completions over multiple LLM providers",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.app_debug else None,
    redoc_url="/redoc" if settings.app_debug else None,
)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content=MalformedRequestError(message).to_envelope())


# Log unhandled exceptions with traceback; callers only see a generic envelope
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(
        status_code=500,
        content={"error": {"message": "Internal Server Error", "type": "api_error", "code": "internal_error"}},
    )


app.add_middleware(PrometheusMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# CORS: allowed_origins is comma-separated
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/health")
async def health():
    db_ok = True
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check: database unavailable: %s", e)
        db_ok = False
    return {"status": "ok" if db_ok else "degraded", "database": db_ok}


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
