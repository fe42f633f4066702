"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from task_escrow_service.routers.helpers import (
    current_actor,
    get_disputes,
    get_lifecycle,
    get_maintenance,
    get_settlement,
    parse_model,
    query_int,
)
from task_escrow_service.schemas import (
    ApplicationCreate,
    RejectionRequest,
    SubmissionReport,
    TaskDraft,
    TaskEdit,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks, GET /tasks (MUST be before /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def post_task(request: Request) -> JSONResponse:
    """Post a new task. Employers only."""
    actor = await current_actor(request)
    draft = await parse_model(request, TaskDraft)
    result = await run_in_threadpool(get_lifecycle().post_task, actor, draft)
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    await current_actor(request)
    limit = query_int(request, "limit", minimum=1)
    offset = query_int(request, "offset", minimum=0)
    tasks = await run_in_threadpool(
        get_lifecycle().list_tasks,
        status=request.query_params.get("status"),
        employer_id=request.query_params.get("employer_id"),
        student_id=request.query_params.get("student_id"),
        limit=limit,
        offset=offset,
    )
    return {"tasks": tasks}


# ---------------------------------------------------------------------------
# Single task
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request) -> dict[str, Any]:
    """Fetch one task."""
    await current_actor(request)
    return await run_in_threadpool(get_lifecycle().get_task, task_id)


@router.patch("/tasks/{task_id}")
async def edit_task(task_id: str, request: Request) -> dict[str, Any]:
    """Edit allow-listed fields of a task. Owning employer only."""
    actor = await current_actor(request)
    edit = await parse_model(request, TaskEdit)
    return await run_in_threadpool(get_lifecycle().edit_task, actor, task_id, edit)


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, request: Request) -> dict[str, Any]:
    """Delete a task with its applications, payments, chat and anomalies. Admin only."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_maintenance().delete_task, actor, task_id)


# ---------------------------------------------------------------------------
# Applications on a task
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/applications", status_code=201)
async def apply(task_id: str, request: Request) -> JSONResponse:
    """Apply to a posted task. Students only."""
    actor = await current_actor(request)
    application = await parse_model(request, ApplicationCreate)
    result = await run_in_threadpool(
        get_lifecycle().apply, actor, task_id, application.message
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/applications")
async def list_task_applications(task_id: str, request: Request) -> dict[str, Any]:
    """Applications on a task, for its employer or an admin."""
    actor = await current_actor(request)
    applications = await run_in_threadpool(
        get_lifecycle().list_task_applications, actor, task_id
    )
    return {"applications": applications}


# ---------------------------------------------------------------------------
# Work and submission
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: Request) -> dict[str, Any]:
    """The employer or the accepted student marks an in-progress task completed."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_lifecycle().complete_task, actor, task_id)


@router.post("/tasks/{task_id}/submission")
async def submit_work(task_id: str, request: Request) -> dict[str, Any]:
    """The accepted student submits proof of work."""
    actor = await current_actor(request)
    report = await parse_model(request, SubmissionReport)
    return await run_in_threadpool(get_lifecycle().submit_work, actor, task_id, report)


@router.post("/tasks/{task_id}/submission/confirm")
async def confirm_submission(task_id: str, request: Request) -> dict[str, Any]:
    """The employer accepts the submission, paying the student."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_settlement().confirm_submission, actor, task_id)


@router.post("/tasks/{task_id}/submission/reject")
async def reject_submission(task_id: str, request: Request) -> dict[str, Any]:
    """The employer rejects the submission with a reason."""
    actor = await current_actor(request)
    rejection = await parse_model(request, RejectionRequest)
    return await run_in_threadpool(
        get_lifecycle().reject_submission, actor, task_id, rejection.reason
    )


# ---------------------------------------------------------------------------
# Money
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/escrow")
async def fund_escrow(task_id: str, request: Request) -> dict[str, Any]:
    """The employer locks the task's gold in escrow."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_settlement().fund_escrow, actor, task_id)


@router.get("/tasks/{task_id}/payment")
async def get_task_payment(task_id: str, request: Request) -> dict[str, Any]:
    """The task's payment record, for its parties and admins."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_settlement().get_task_payment, actor, task_id)


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> dict[str, Any]:
    """The accepted student walks away and pays the cancellation fee."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_settlement().cancel_by_student, actor, task_id)


@router.post("/tasks/{task_id}/dispute")
async def open_dispute(task_id: str, request: Request) -> dict[str, Any]:
    """The accepted student contests a rejection."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_disputes().open_dispute, actor, task_id)
