"""
Main FastAPI application
"""
import logging
import time
import json

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from dealerledger.config.database import db_config
from dealerledger.config.settings import settings
from dealerledger.services.exceptions import LedgerError

from dealerledger.routes import (
    bookings,
    ledger,
    approvals,
    on_account,
    commission_payments,
)

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events"""
    # Startup
    await db_config.connect_db()
    logger.info("🚀 %s v%s started", settings.APP_NAME, settings.VERSION)
    yield
    # Shutdown
    await db_config.close_db()
    logger.info("👋 Application shutdown")

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    logger.info(
        "%s %s -> %d %s: %s",
        request.method, request.url.path, exc.status_code, type(exc).__name__, exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Round-trip through json with default=str to handle non-serializable objects (e.g. ValueError)
    safe_errors = json.loads(json.dumps(exc.errors(), default=str))
    logger.info("400 validation error on %s %s: %s", request.method, request.url.path, safe_errors)
    return JSONResponse(status_code=400, content={"detail": safe_errors})

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time
    logger.info("%s %s - %d (%.2fs)", request.method, request.url.path, response.status_code, duration)
    return response

# Include routers
app.include_router(bookings.router, prefix="/api")
app.include_router(ledger.router, prefix="/api")
app.include_router(approvals.router, prefix="/api")
app.include_router(on_account.subdealer_router, prefix="/api")
app.include_router(on_account.router, prefix="/api")
app.include_router(commission_payments.router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "status": "running"
    }

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
