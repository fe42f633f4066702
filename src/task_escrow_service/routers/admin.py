"""Administrative audit, cleanup and deletion endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_escrow_service.config import get_safe_config
from task_escrow_service.routers.helpers import (
    current_actor,
    get_auditor,
    get_maintenance,
    parse_model,
)
from task_escrow_service.schemas import AuditRequest
from task_escrow_service.services.guards import require_admin

router = APIRouter()


@router.post("/admin/audit")
async def audit_all(request: Request) -> dict[str, Any]:
    """Reconcile every student's balance against the ledger."""
    actor = await current_actor(request)
    audit = await parse_model(request, AuditRequest)
    return await run_in_threadpool(get_auditor().audit_all, actor, audit.run_id)


@router.post("/admin/audit/{student_id}")
async def audit_student(student_id: str, request: Request) -> dict[str, Any]:
    """Reconcile one student's balance against the ledger."""
    actor = await current_actor(request)
    audit = await parse_model(request, AuditRequest)
    return await run_in_threadpool(
        get_auditor().audit_student, actor, student_id, audit.run_id
    )


@router.post("/admin/cleanup")
async def cleanup(request: Request) -> dict[str, Any]:
    """Cancel disputed and stale tasks, refunding their escrow."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_maintenance().cleanup, actor)


@router.delete("/admin/users/{user_id}")
async def delete_user(user_id: str, request: Request) -> dict[str, Any]:
    """Delete a non-admin user and what depends on them."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_maintenance().delete_user, actor, user_id)


@router.get("/admin/config")
async def show_config(request: Request) -> dict[str, Any]:
    """The running configuration with secrets redacted."""
    actor = await current_actor(request)
    require_admin(actor)
    return get_safe_config()
