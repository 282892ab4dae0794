from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from shiprate.config import settings
from shiprate.api.v1.router import api_router
from shiprate.core.exceptions import ShipRateError
from shiprate.database import init_db, async_session_factory
from shiprate.jobs.scheduler import start_scheduler, shutdown_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
    - Create tables
    - Start background scheduler
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    start_scheduler()

    yield

    shutdown_scheduler()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Quotes", "description": "Multi-courier quotes, ranking and option selection"},
    {"name": "Shipments", "description": "Book-from-quote with compensation on carrier failure"},
    {"name": "Reconciliation", "description": "Carrier billing import and pricing variance cases"},
]

API_DESCRIPTION = """
## ShipRate API

Quote, book and reconcile shipments across couriers.

### Headers

- `X-Tenant-ID` (required): owner every request is scoped to
- `X-Seller-ID` (optional): seller whose courier policy and sell rates apply

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Validation failed |
| 404 | Not Found - Resource doesn't exist |
| 409 | Conflict - Booking compensated or concurrent update |
| 410 | Gone - Quote session expired |
| 422 | Unprocessable Entity - Invalid option for the session |
| 502 | Bad Gateway - Courier error |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(ShipRateError)
async def shiprate_exception_handler(request: Request, exc: ShipRateError):
    """Map domain errors to their HTTP status with a machine-readable code."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "error_code": exc.error_code,
            "details": exc.details,
            "path": str(request.url.path),
        },
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status
