from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from scrape_orchestrator.config import Settings, get_settings
from scrape_orchestrator.core.database import get_db
from scrape_orchestrator.core.scheduler import ScrapeScheduler
from scrape_orchestrator.services.execution_engine import ExecutionEngine
from scrape_orchestrator.services.log_stream import LogStream

# Type aliases for dependency injection
DBSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]


def get_engine(request: Request) -> ExecutionEngine:
    """The execution engine built by the application lifespan."""
    engine: ExecutionEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Execution engine is not running",
        )
    return engine


def get_log_stream(request: Request) -> LogStream:
    log_stream: LogStream | None = getattr(request.app.state, "log_stream", None)
    if log_stream is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Log stream is not available",
        )
    return log_stream


def get_scrape_scheduler(request: Request) -> ScrapeScheduler | None:
    """The running scheduler, or None when timers are disabled."""
    return getattr(request.app.state, "scheduler", None)


Engine = Annotated[ExecutionEngine, Depends(get_engine)]
Logs = Annotated[LogStream, Depends(get_log_stream)]
Scheduler = Annotated[ScrapeScheduler | None, Depends(get_scrape_scheduler)]
