import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_calls,  # noqa: F401
    models_google_calendar,  # noqa: F401
)
from .database import Base, engine
from .domain.billing.router import router as billing_router
from .domain.billing.router import webhooks_router as mercadopago_webhooks_router
from .routes.agendamentos import router as agendamentos_router
from .routes.calls import router as calls_router
from .routes.deals import router as deals_router
from .routes.google_calendar import router as google_calendar_router
from .routes.google_calendar import webhooks_router as google_calendar_webhooks_router
from .routes.hotmart_webhooks import router as hotmart_webhooks_router
from .routes.metas import ranking_router
from .routes.metas import router as metas_router
from .routes.plans import router as plans_router
from .routes.sellers import router as sellers_router
from .routes.twilio_voice import router as twilio_voice_router
from .security_headers import SecurityHeadersMiddleware

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

SECURITY_HEADERS_ENABLED = os.getenv("SECURITY_HEADERS_ENABLED", "true").lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    from .rate_limiter import get_redis_client

    if get_redis_client() is None:
        logger.warning("Redis unavailable - rate limiting will count in memory only")
    else:
        logger.info("Redis connection established")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Game Sales API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Convert 422 validation errors from HTTPBearer to 401 authentication errors
    when the issue is with the Authorization header
    """
    for error in exc.errors():
        if error.get("loc") and "authorization" in str(error.get("loc")).lower():
            logger.warning(
                f"Authentication failed for {request.url.path}: Missing or invalid Authorization header"
            )
            return JSONResponse(
                status_code=401,
                content={
                    "detail": "Not authenticated. Please provide a valid Bearer token in the Authorization header."
                },
            )

    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
        raise

    duration_ms = (time.time() - start_time) * 1000
    if duration_ms > 2000:
        logger.warning(f"🐢 Slow request: {request.method} {request.url.path} took {duration_ms:.0f}ms")
    return response


if SECURITY_HEADERS_ENABLED:
    app.add_middleware(
        SecurityHeadersMiddleware,
        exclude_paths=["/health", "/docs", "/openapi.json", "/twilio/", "/google-calendar/oauth/"],
    )
    logger.info("Security headers enabled")
else:
    logger.warning("Security headers DISABLED - only use in development!")


# CORS Configuration
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "https://gamesales.app,https://www.gamesales.app,http://localhost:5173,http://localhost:8080",
).split(",")

logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Routes
app.include_router(plans_router)
app.include_router(billing_router)
app.include_router(mercadopago_webhooks_router)
app.include_router(google_calendar_router)
app.include_router(google_calendar_webhooks_router)
app.include_router(agendamentos_router)
app.include_router(hotmart_webhooks_router)
app.include_router(deals_router)
app.include_router(sellers_router)
app.include_router(metas_router)
app.include_router(ranking_router)
app.include_router(calls_router)
app.include_router(twilio_voice_router)


@app.get("/")
def root():
    return {"message": "Game Sales API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
