from fastapi import APIRouter

from scrape_orchestrator.api.executions import router as executions_router
from scrape_orchestrator.api.schedules import router as schedules_router
from scrape_orchestrator.api.scrapes import router as scrapes_router
from scrape_orchestrator.api.targets import router as targets_router

api_router = APIRouter()

# API routes at /api/*
api_router.include_router(scrapes_router, prefix="/api", tags=["scrapes"])
api_router.include_router(executions_router, prefix="/api", tags=["executions"])
api_router.include_router(targets_router, prefix="/api", tags=["targets"])
api_router.include_router(schedules_router, prefix="/api", tags=["schedules"])
