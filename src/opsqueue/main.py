"""
OpsQueue SLA - Main Application
================================

SLA timer and escalation engine for the operations work queue.

Modules:
- SLA Engine: timers per service order/task, SLA status, escalation
  ladder, work-queue views

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects, pure domain services
- Infrastructure: Database, policy file, notifications, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from opsqueue.config import Settings, get_settings
from opsqueue.infrastructure.database import Database
from opsqueue.shared.api.middleware import install_middleware
from opsqueue.shared.infrastructure.logging import get_logger, setup_logging
from opsqueue.sla.infrastructure import SLAEngine
from opsqueue.sla.interfaces import sla_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Connect database and create tables
    3. Load SLA policy file and start watching it
    4. Start the escalation scheduler

    SHUTDOWN:
    1. Stop scheduler and policy watcher
    2. Close notification client
    3. Close database connections
    """
    settings: Settings = app.state.settings

    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting OpsQueue SLA service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    database = Database(settings)
    database.connect()
    app.state.database = database

    # Development convenience; production schemas are migrated separately.
    # If the database is not reachable the service starts degraded.
    try:
        await database.create_tables()
    except (OSError, SQLAlchemyError) as e:
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    engine = SLAEngine(settings, database=database)
    app.state.sla_engine = engine
    await engine.start()

    logger.info("OpsQueue SLA service started")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down OpsQueue SLA service")
    await engine.stop()
    await database.close()
    logger.info("OpsQueue SLA service shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application around explicit settings."""
    settings = settings or get_settings()

    app = FastAPI(
        title="OpsQueue SLA API",
        description="""
    ## Operations Work Queue - SLA Engine

    Tracks elapsed and paused time for every active service order (or task)
    against its service type's SLA policy, and escalates as time runs out.

    ### Timers
    - `POST /sla/timers` - Open a timer
    - `GET /sla/timers/{id}` - Timer with current SLA status
    - `POST /sla/timers/{id}/pause|resume|stop|extend`
    - `POST /sla/orders/{id}/status` - Order lifecycle hook

    ### Work queue
    - `GET /sla/work-queue` - Items ordered by hours remaining
    - `GET /sla/work-queue/stats` - Counts by SLA status, priority, assignee

    ### Escalations
    - `POST /sla/escalations/check` - Run a sweep now
    - `GET /sla/escalations` - Escalation history

    **SLA status** (first match wins): `breached` when no time remains,
    `warning` within the critical threshold, `at_risk` within the warning
    threshold, `on_track` otherwise.
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.settings = settings

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Correlation id, logging, exception handlers ===
    install_middleware(app)

    # === Include Module Routers ===
    app.include_router(sla_router)

    @app.get("/health", tags=["Health"], responses={
        200: {
            "description": "Service is healthy",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "version": "1.0.0",
                        "environment": "development",
                        "checks": {
                            "database": "configured",
                            "sla_policies": "3 loaded",
                            "sla_scheduler": "running"
                        }
                    }
                }
            }
        }
    })
    async def health_check(request: Request):
        """Health check endpoint for load balancers and orchestrators."""
        engine: Optional[SLAEngine] = getattr(request.app.state, "sla_engine", None)
        database = getattr(request.app.state, "database", None)

        checks = {
            "database": "configured" if database is not None else "not_configured",
            "sla_policies": f"{len(engine.policy_file.list_policies())} loaded" if engine else "not_loaded",
            "sla_scheduler": "running" if engine and engine.scheduler.is_running else "stopped",
        }

        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": checks
        }

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "architecture": "Clean Architecture / Modular Monolith",
            "docs": "/docs",
            "health": "/health",
            "modules": {
                "sla": {
                    "prefix": "/sla",
                    "endpoints": [
                        "POST /sla/timers - Open timer",
                        "GET /sla/timers/{id} - Timer SLA status",
                        "GET /sla/work-queue - Work queue",
                        "GET /sla/work-queue/stats - Work queue statistics",
                        "POST /sla/escalations/check - Run escalation check"
                    ]
                }
            }
        }

    return app


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "opsqueue.main:app",
        host=_settings.host,
        port=_settings.port,
        reload=_settings.environment == "development",
        log_level=_settings.log_level.lower()
    )
