"""
Checkout Microservice
Order lifecycle and M-Pesa payment pipeline for the poultry marketplace
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import subprocess
import os

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from checkout.api.routes import router as orders_router
from checkout.api.payment_routes import router as payments_router
from checkout.core_settings import get_settings
from checkout.domain.errors import CheckoutError, GatewayError
from checkout.infrastructure.db import init_models, get_engine
from checkout.infrastructure.lipia import get_lipia_client

# Service configuration
SERVICE_NAME = "checkout-service"
SERVICE_VERSION = os.getenv("SERVICE_VERSION", "1.0.0")
SERVICE_DESCRIPTION = "Order checkout, payment and reconciliation microservice"

setup_logging(
    service_name=SERVICE_NAME,
    level=os.getenv("LOG_LEVEL", "INFO")
)

logger = get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")

    try:
        logger.info("Running database migrations")
        result = subprocess.run(
            ["alembic", "upgrade", "head"],
            cwd=os.path.join(os.path.dirname(__file__), ".."),
            capture_output=True,
            text=True,
            check=False
        )
        if result.returncode != 0:
            logger.warning(f"Migration output: {result.stderr}")
        else:
            logger.info("Database migrations completed")
    except OSError as e:
        logger.error(f"Migration error: {e}")

    try:
        init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise

    if not get_settings().LIPIA_API_KEY:
        logger.warning("LIPIA_API_KEY is not configured. STK Push payments will not work.")

    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")

app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)

@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    if isinstance(exc, GatewayError):
        logger.warning(
            f"Payment gateway error: {exc.message}",
            extra={'extra_fields': {'code': exc.code, 'field': exc.field, 'status_code': exc.status_code}},
        )
    elif exc.status_code >= 500:
        logger.error(f"Request failed: {exc.message}")
    else:
        logger.info(f"Request rejected: {exc.message}", extra={'extra_fields': {'status_code': exc.status_code}})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled error: {request.method} {request.url.path}",
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return JSONResponse(status_code=500, content={"error": "Failed to process request"})

health_service = ServiceHealth(
    SERVICE_NAME,
    SERVICE_VERSION,
    engine_provider=get_engine,
    gateway_configured=lambda: get_lipia_client().configured,
)
app.include_router(health_service.create_health_router())

app.include_router(orders_router, prefix="/api")
app.include_router(payments_router, prefix="/api")

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }

@app.get("/info")
async def info():
    """Service information endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": SERVICE_DESCRIPTION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "endpoints": {
            "health": "/health",
            "ready": "/health/ready",
            "live": "/health/live",
            "metrics": "/metrics",
            "docs": "/api/docs",
            "orders": "/api/orders",
            "payments": "/api/payments",
            "callback": "/api/payments/callback/order/{orderId}"
        }
    }
