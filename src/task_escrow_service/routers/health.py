"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from task_escrow_service.core.state import get_app_state
from task_escrow_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return task statistics."""
    state = get_app_state()
    tasks_by_status: dict[str, int] = {}
    if state.store is not None:
        tasks_by_status = state.store.count_tasks_by_status()
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=sum(tasks_by_status.values()),
        tasks_by_status=tasks_by_status,
    )
