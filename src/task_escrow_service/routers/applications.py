"""Application review endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_escrow_service.routers.helpers import current_actor, get_lifecycle

router = APIRouter()


@router.get("/applications/me")
async def list_my_applications(request: Request) -> dict[str, Any]:
    """Applications the calling student has submitted."""
    actor = await current_actor(request)
    applications = await run_in_threadpool(get_lifecycle().list_my_applications, actor)
    return {"applications": applications}


@router.post("/applications/{application_id}/evaluate")
async def mark_evaluating(application_id: str, request: Request) -> dict[str, Any]:
    """The employer starts evaluating an application."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_lifecycle().mark_evaluating, actor, application_id)


@router.post("/applications/{application_id}/reject")
async def reject_application(application_id: str, request: Request) -> dict[str, Any]:
    """The employer turns an application down."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_lifecycle().reject_application, actor, application_id)


@router.post("/applications/{application_id}/accept")
async def accept_application(application_id: str, request: Request) -> dict[str, Any]:
    """The employer accepts an application, putting the task in progress."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_lifecycle().accept_application, actor, application_id)
