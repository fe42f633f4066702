"""Anomaly review endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_escrow_service.routers.helpers import current_actor, get_anomalies, parse_model
from task_escrow_service.schemas import AnomalyAction
from task_escrow_service.services.guards import require_admin

router = APIRouter()


@router.get("/anomalies")
async def list_anomalies(request: Request) -> dict[str, Any]:
    """Admins see every anomaly; other users only those that name them."""
    actor = await current_actor(request)
    anomalies = await run_in_threadpool(
        get_anomalies().list_anomalies,
        actor,
        status=request.query_params.get("status"),
        anomaly_type=request.query_params.get("type"),
        severity=request.query_params.get("severity"),
    )
    return {"anomalies": anomalies}


@router.post("/anomalies/sweep")
async def run_sweep(request: Request) -> dict[str, Any]:
    """Run every anomaly detector once. Admin only."""
    actor = await current_actor(request)
    require_admin(actor)
    return await run_in_threadpool(get_anomalies().run_sweep)


@router.get("/anomalies/{anomaly_id}")
async def get_anomaly(anomaly_id: str, request: Request) -> dict[str, Any]:
    """Fetch one anomaly. Admin only."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_anomalies().get_anomaly, actor, anomaly_id)


@router.post("/anomalies/{anomaly_id}/resolve")
async def resolve_anomaly(anomaly_id: str, request: Request) -> dict[str, Any]:
    """Close an anomaly as resolved."""
    actor = await current_actor(request)
    action = await parse_model(request, AnomalyAction)
    return await run_in_threadpool(
        get_anomalies().resolve_anomaly, actor, anomaly_id, action.notes
    )


@router.post("/anomalies/{anomaly_id}/dismiss")
async def dismiss_anomaly(anomaly_id: str, request: Request) -> dict[str, Any]:
    """Close an anomaly as a false positive."""
    actor = await current_actor(request)
    action = await parse_model(request, AnomalyAction)
    return await run_in_threadpool(
        get_anomalies().dismiss_anomaly, actor, anomaly_id, action.notes
    )


@router.post("/anomalies/{anomaly_id}/investigate")
async def mark_investigating(anomaly_id: str, request: Request) -> dict[str, Any]:
    """Move an open anomaly under investigation."""
    actor = await current_actor(request)
    action = await parse_model(request, AnomalyAction)
    return await run_in_threadpool(
        get_anomalies().mark_investigating, actor, anomaly_id, action.notes
    )
