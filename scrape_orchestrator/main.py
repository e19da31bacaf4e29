from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from scrape_orchestrator.api.router import api_router
from scrape_orchestrator.config import get_settings
from scrape_orchestrator.core.database import AsyncSessionLocal
from scrape_orchestrator.core.logging import get_logger, setup_logging
from scrape_orchestrator.core.scheduler import start_scheduler, stop_scheduler
from scrape_orchestrator.services.execution_engine import ExecutionEngine
from scrape_orchestrator.services.log_stream import build_log_stream
from scrape_orchestrator.services.performance_tracker import PerformanceTracker

logger = get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    # Startup
    setup_logging()
    log_stream = build_log_stream(settings)
    engine = ExecutionEngine(
        AsyncSessionLocal,
        settings,
        log_stream,
        tracker=PerformanceTracker(AsyncSessionLocal),
    )
    app.state.log_stream = log_stream
    app.state.engine = engine

    await engine.recover_interrupted_jobs()
    if settings.poller_enabled:
        engine.start_poller()
    app.state.scheduler = await start_scheduler(AsyncSessionLocal, engine)
    logger.bind(
        max_concurrent_jobs=settings.max_concurrent_jobs,
        max_concurrent_targets=settings.max_concurrent_targets,
        max_worker_processes=settings.max_worker_processes,
    ).info("application_started")
    yield
    # Shutdown
    await stop_scheduler()
    await engine.shutdown()
    await log_stream.close()
    app.state.scheduler = None


app = FastAPI(
    title="Scrape Orchestrator",
    description="Scrape job orchestration for judicial portals",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
)

# Include API routes
app.include_router(api_router)


@app.get("/health")
async def health_check(request: Request) -> dict[str, object]:
    """Health check endpoint for load balancers."""
    engine: ExecutionEngine | None = getattr(request.app.state, "engine", None)
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "healthy",
        "running_jobs": len(engine.running_jobs) if engine else 0,
        "worker_processes": engine.process_slots.in_use if engine else 0,
        "schedules": scheduler.stats()["registered"] if scheduler else 0,
    }
