"""Dispute arbitration endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_escrow_service.routers.helpers import current_actor, get_disputes, parse_model
from task_escrow_service.schemas import DisputeResolution

router = APIRouter()


@router.get("/disputes")
async def list_disputes(request: Request) -> dict[str, Any]:
    """Tasks currently under dispute. Admin only."""
    actor = await current_actor(request)
    disputes = await run_in_threadpool(get_disputes().list_disputes, actor)
    return {"disputes": disputes}


@router.get("/disputes/{task_id}/messages")
async def get_dispute_thread(task_id: str, request: Request) -> dict[str, Any]:
    """The chat thread opened with the dispute."""
    actor = await current_actor(request)
    messages = await run_in_threadpool(get_disputes().get_dispute_thread, actor, task_id)
    return {"task_id": task_id, "messages": messages}


@router.post("/disputes/{task_id}/resolve")
async def resolve_dispute(task_id: str, request: Request) -> dict[str, Any]:
    """Rule on a dispute in favour of the student or the employer. Admin only."""
    actor = await current_actor(request)
    ruling = await parse_model(request, DisputeResolution)
    return await run_in_threadpool(
        get_disputes().resolve_dispute, actor, task_id, ruling.winner, ruling.reason
    )
