"""API routers."""

from task_escrow_service.routers import (
    admin,
    anomalies,
    applications,
    disputes,
    health,
    payments,
    tasks,
    users,
)

__all__ = [
    "admin",
    "anomalies",
    "applications",
    "disputes",
    "health",
    "payments",
    "tasks",
    "users",
]
