"""
Order Tracking Service - FastAPI Application
Main entry point for the API server.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.api import (
    orders_router,
    location_router,
    agents_router,
    realtime_router,
)
from app.core.errors import TrackingError
from app.core.events import EventBus
from app.database import READ_ONLY_OPTIONS, build_engine, build_session_factory, init_db
from app.services.tracking import TrackingCoordinator


settings = get_settings()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown events."""
    # Startup
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(f"Starting {settings.app_title} v{settings.app_version}")

    engine = build_engine(
        settings.database_url,
        echo=settings.debug,
        sqlite_busy_timeout=settings.sqlite_busy_timeout_seconds,
    )
    # Initialize database tables (important for SQLite)
    await init_db(engine)
    logger.info("Database tables initialized")

    event_bus = EventBus(buffer_size=settings.subscriber_buffer_size)
    app.state.engine = engine
    app.state.event_bus = event_bus
    app.state.coordinator = TrackingCoordinator(build_session_factory(engine), event_bus, settings)

    yield
    # Shutdown
    logger.info("Shutting down...")
    event_bus.close()
    await engine.dispose()


# Create FastAPI application
app = FastAPI(
    title=settings.app_title,
    version=settings.app_version,
    description="""
    ## Order Tracking Service API

    Order lifecycle, delivery-agent matching and realtime tracking for food delivery.

    ### Features
    - **Order State Machine**: Validated status transitions with an append-only tracking log
    - **Geo Index**: Latest agent positions and haversine nearest-agent search
    - **Assignment**: Nearest available agent, claimed atomically
    - **Realtime**: Server-Sent Events per order and per agent

    ### Main Endpoints
    - `POST /api/orders` - Place an order
    - `PATCH /api/orders/{id}/status` - Update order status
    - `POST /api/orders/{id}/assign-agent` - Assign the nearest agent
    - `POST /api/location/update` - Report agent location
    - `GET /api/realtime/stream` - SSE stream for order and agent events
    """,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TrackingError)
async def tracking_error_handler(request: Request, exc: TrackingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields[".".join(loc) or "request"] = error.get("msg", "invalid value")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation_error", "message": "Invalid request", "fields": fields},
    )


# Include API routers
app.include_router(orders_router, prefix=settings.api_prefix)
app.include_router(location_router, prefix=settings.api_prefix)
app.include_router(agents_router, prefix=settings.api_prefix)
app.include_router(realtime_router, prefix=settings.api_prefix)


@app.get("/", tags=["Health"])
async def root():
    """Root endpoint - health check."""
    return {
        "status": "healthy",
        "service": settings.app_title,
        "version": settings.app_version,
    }


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return {"status": "healthy", "database": "not configured"}
    try:
        async with engine.connect() as conn:
            await conn.execution_options(**READ_ONLY_OPTIONS)
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "unavailable"},
        )
    return {"status": "healthy", "database": "connected"}
