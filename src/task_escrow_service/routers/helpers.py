"""Shared router helper functions."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from task_escrow_service.services.anomaly_sweep import AnomalySweep
    from task_escrow_service.services.consistency_auditor import ConsistencyAuditor
    from task_escrow_service.services.dispute_arbitrator import DisputeArbitrator
    from task_escrow_service.services.identity import Actor
    from task_escrow_service.services.ledger_store import LedgerStore
    from task_escrow_service.services.maintenance import MaintenanceService
    from task_escrow_service.services.settlement import SettlementEngine
    from task_escrow_service.services.task_lifecycle import TaskLifecycle

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_json_body(body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


async def parse_model(request: Request, model: type[ModelT]) -> ModelT:
    """Parse the request body into a request model. An empty body counts as ``{}``."""
    body = await request.body()
    data = {} if body == b"" else parse_json_body(body)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
            for error in exc.errors(include_url=False, include_context=False)
        ]
        raise ServiceError(
            "VALIDATION_ERROR",
            "Request body failed validation",
            400,
            {"errors": errors},
        ) from exc


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the identity assertion from the Authorization header."""
    if authorization is None:
        raise ServiceError("UNAUTHORIZED", "Missing Authorization header", 401, {})

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHORIZED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise ServiceError("UNAUTHORIZED", "Bearer token must not be empty", 401, {})

    return token


async def current_actor(request: Request) -> Actor:
    """Verify the caller's identity assertion and return the acting user."""
    token = extract_bearer_token(request.headers.get("authorization"))
    state = get_app_state()
    if state.identity_verifier is None:
        msg = "Identity verifier not initialized"
        raise RuntimeError(msg)
    return await run_in_threadpool(state.identity_verifier.verify, token)


def query_int(request: Request, name: str, *, minimum: int) -> int | None:
    """Read an optional integer query parameter."""
    raw = request.query_params.get(name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError("VALIDATION_ERROR", f"{name} must be an integer", 400, {}) from exc
    if value < minimum:
        raise ServiceError("VALIDATION_ERROR", f"{name} must be >= {minimum}", 400, {})
    return value


def _not_initialized(component: str) -> RuntimeError:
    return RuntimeError(f"{component} not initialized")


def get_store() -> LedgerStore:
    state = get_app_state()
    if state.store is None:
        raise _not_initialized("LedgerStore")
    return state.store


def get_lifecycle() -> TaskLifecycle:
    state = get_app_state()
    if state.lifecycle is None:
        raise _not_initialized("TaskLifecycle")
    return state.lifecycle


def get_settlement() -> SettlementEngine:
    state = get_app_state()
    if state.settlement is None:
        raise _not_initialized("SettlementEngine")
    return state.settlement


def get_disputes() -> DisputeArbitrator:
    state = get_app_state()
    if state.disputes is None:
        raise _not_initialized("DisputeArbitrator")
    return state.disputes


def get_anomalies() -> AnomalySweep:
    state = get_app_state()
    if state.anomalies is None:
        raise _not_initialized("AnomalySweep")
    return state.anomalies


def get_auditor() -> ConsistencyAuditor:
    state = get_app_state()
    if state.auditor is None:
        raise _not_initialized("ConsistencyAuditor")
    return state.auditor


def get_maintenance() -> MaintenanceService:
    state = get_app_state()
    if state.maintenance is None:
        raise _not_initialized("MaintenanceService")
    return state.maintenance
