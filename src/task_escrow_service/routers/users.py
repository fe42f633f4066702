"""User profile endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_escrow_service.routers.helpers import (
    current_actor,
    get_anomalies,
    get_store,
    parse_model,
)
from task_escrow_service.schemas import CompanyNameChange
from task_escrow_service.services.guards import require_admin, require_user

router = APIRouter()


@router.get("/users/me")
async def get_me(request: Request) -> dict[str, Any]:
    """Return the caller's own profile, balance included."""
    actor = await current_actor(request)
    return await run_in_threadpool(require_user, get_store(), actor.user_id)


@router.get("/users/me/notifications")
async def list_my_notifications(request: Request) -> dict[str, Any]:
    """Notifications recorded for the caller, newest first."""
    actor = await current_actor(request)
    notifications = await run_in_threadpool(get_store().list_notifications, actor.user_id)
    return {"notifications": notifications}


@router.get("/users")
async def list_users(request: Request) -> dict[str, Any]:
    """List users, optionally by role. Admin only."""
    actor = await current_actor(request)
    require_admin(actor)
    role = request.query_params.get("role")
    users = await run_in_threadpool(get_store().list_users, role)
    return {"users": users}


@router.get("/users/{user_id}")
async def get_user(user_id: str, request: Request) -> dict[str, Any]:
    """Return any user's profile. Admin only."""
    actor = await current_actor(request)
    require_admin(actor)
    return await run_in_threadpool(require_user, get_store(), user_id)


@router.put("/employers/me/company-name")
async def change_company_name(request: Request) -> dict[str, Any]:
    """Rename the caller's company. Repeated renames are flagged for review."""
    actor = await current_actor(request)
    change = await parse_model(request, CompanyNameChange)
    return await run_in_threadpool(
        get_anomalies().change_company_name, actor, change.company_name
    )
