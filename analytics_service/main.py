from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import structlog
import time

from analytics_service.core.config import settings
from analytics_service.core.errors import AnalyticsError
from analytics_service.api import analytics, events, health, tracking
from analytics_service.middleware.rate_limit import rate_limit_middleware
from analytics_service.services.container import Services, build_services

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level.upper())
    )
)

logger = structlog.get_logger()


# Middleware for logging requests
async def log_requests(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    duration = time.time() - start_time
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration * 1000, 2)
    )

    return response


async def analytics_error_handler(request: Request, exc: AnalyticsError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=exc.message
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(services: Services | None = None) -> FastAPI:
    """Build the API; without ``services`` they are created from settings at startup"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle events"""
        logger.info("application_startup", app_name=settings.app_name)
        if app.state.services is None:
            app.state.services = build_services(settings)
        await app.state.services.start()
        yield
        await app.state.services.close()
        logger.info("application_shutdown")

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan
    )
    app.state.services = services

    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(log_requests)
    app.add_exception_handler(AnalyticsError, analytics_error_handler)

    # Include routers
    app.include_router(health.router)
    app.include_router(tracking.router)
    app.include_router(events.router)
    app.include_router(analytics.router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": settings.app_name,
            "endpoints": {
                "health": "/health",
                "track": "/track",
                "events": "/events",
                "stream": "/events/stream",
                "analytics": "/analytics",
                "docs": "/docs"
            }
        }

    return app


app = create_app()
