"""Payment release and ledger read endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_escrow_service.routers.helpers import current_actor, get_settlement

router = APIRouter()


@router.get("/payments")
async def list_payments(request: Request) -> dict[str, Any]:
    """Every payment in the ledger, optionally by status. Admin only."""
    actor = await current_actor(request)
    payments = await run_in_threadpool(
        get_settlement().list_payments, actor, status=request.query_params.get("status")
    )
    return {"payments": payments}


@router.get("/payments/me")
async def list_my_payments(request: Request) -> dict[str, Any]:
    """Payments addressed to the calling student."""
    actor = await current_actor(request)
    payments = await run_in_threadpool(get_settlement().list_student_payments, actor)
    return {"payments": payments}


@router.post("/payments/{payment_id}/release")
async def release_payment(payment_id: str, request: Request) -> dict[str, Any]:
    """Release an escrowed payment in full."""
    actor = await current_actor(request)
    return await run_in_threadpool(get_settlement().release_payment, actor, payment_id)


@router.post("/payments/{payment_id}/release-bonus")
async def release_payment_with_bonus(payment_id: str, request: Request) -> dict[str, Any]:
    """Release an escrowed payment as a gold bonus plus XP."""
    actor = await current_actor(request)
    return await run_in_threadpool(
        get_settlement().release_payment_with_bonus, actor, payment_id
    )
