"""Target config endpoints."""

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import select

from scrape_orchestrator.dependencies import DBSession
from scrape_orchestrator.models.target import Degree, TargetConfig
from scrape_orchestrator.schemas.scrape import TargetPerformanceResponse
from scrape_orchestrator.services import tribunal_sorter
from scrape_orchestrator.services.performance_tracker import get_target_stats

router = APIRouter()


class TargetResponse(BaseModel):
    id: str
    code: str
    degree: Degree
    system: str
    name: str | None
    label: str


@router.get("/targets", response_model=list[TargetResponse])
async def list_targets(db: DBSession) -> list[TargetResponse]:
    """All configured targets in tribunal execution order."""
    result = await db.execute(select(TargetConfig))
    return [
        TargetResponse(
            id=t.id,
            code=t.code,
            degree=t.degree,
            system=t.system,
            name=t.name,
            label=t.label,
        )
        for t in tribunal_sorter.order(result.scalars().all())
    ]


@router.get("/targets/{target_config_id}/performance", response_model=TargetPerformanceResponse)
async def target_performance(
    target_config_id: str,
    db: DBSession,
    days: int = Query(default=7, ge=1, le=90),
) -> TargetPerformanceResponse:
    """Aggregated execution metrics of one target over the last ``days`` days."""
    target = await db.get(TargetConfig, target_config_id)
    if target is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Target {target_config_id} not found",
        )

    stats = await get_target_stats(db, target_config_id, days)
    return TargetPerformanceResponse(
        target_config_id=target_config_id,
        days=days,
        total_executions=stats.total_executions,
        success_rate=stats.success_rate,
        avg_duration_ms=stats.avg_duration_ms,
        avg_result_count=stats.avg_result_count,
        error_types=stats.error_types,
    )
