"""Lookup and authorization checks shared by the ledger services."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from task_escrow_service.services.identity import Actor
    from task_escrow_service.services.ledger_store import LedgerStore


def forbidden(message: str) -> ServiceError:
    return ServiceError("FORBIDDEN", message, 403, {})


def invalid_state(message: str, **details: Any) -> ServiceError:
    return ServiceError("INVALID_STATE", message, 409, details)


def validation_error(message: str, **details: Any) -> ServiceError:
    return ServiceError("VALIDATION_ERROR", message, 400, details)


def conflict(message: str, **details: Any) -> ServiceError:
    return ServiceError("CONFLICT", message, 409, details)


def require_role(actor: Actor, *roles: str) -> None:
    """Raise FORBIDDEN unless the actor holds one of the roles."""
    if actor.role not in roles:
        raise forbidden(f"This operation requires role: {', '.join(roles)}")


def require_admin(actor: Actor) -> None:
    require_role(actor, "admin")


def require_task(store: LedgerStore, task_id: str) -> dict[str, Any]:
    task = store.get_task(task_id)
    if task is None:
        raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
    return task


def require_user(store: LedgerStore, user_id: str) -> dict[str, Any]:
    user = store.get_user(user_id)
    if user is None:
        raise ServiceError("USER_NOT_FOUND", "User not found", 404, {"user_id": user_id})
    return user


def require_application(store: LedgerStore, application_id: str) -> dict[str, Any]:
    application = store.get_application(application_id)
    if application is None:
        raise ServiceError(
            "APPLICATION_NOT_FOUND",
            "Application not found",
            404,
            {"application_id": application_id},
        )
    return application


def require_payment(store: LedgerStore, payment_id: str) -> dict[str, Any]:
    payment = store.get_payment(payment_id)
    if payment is None:
        raise ServiceError(
            "PAYMENT_NOT_FOUND", "Payment not found", 404, {"payment_id": payment_id}
        )
    return payment


def require_anomaly(store: LedgerStore, anomaly_id: str) -> dict[str, Any]:
    anomaly = store.get_anomaly(anomaly_id)
    if anomaly is None:
        raise ServiceError(
            "ANOMALY_NOT_FOUND", "Anomaly not found", 404, {"anomaly_id": anomaly_id}
        )
    return anomaly


def require_task_owner(actor: Actor, task: dict[str, Any]) -> None:
    """Only the employer who posted the task may act on it."""
    if task["employer_id"] != actor.user_id:
        raise forbidden("Only the employer who posted this task can perform this action")


def require_accepted_student(actor: Actor, task: dict[str, Any]) -> None:
    """Only the student accepted on the task may act on it."""
    if task["accepted_student_id"] is None or task["accepted_student_id"] != actor.user_id:
        raise forbidden("Only the accepted student can perform this action")
