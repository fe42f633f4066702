"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from task_escrow_service.clients.notification_client import NotificationClient
    from task_escrow_service.services.anomaly_sweep import AnomalySweep
    from task_escrow_service.services.consistency_auditor import ConsistencyAuditor
    from task_escrow_service.services.dispute_arbitrator import DisputeArbitrator
    from task_escrow_service.services.identity import IdentityVerifier
    from task_escrow_service.services.ledger_store import LedgerStore
    from task_escrow_service.services.maintenance import MaintenanceService
    from task_escrow_service.services.notifier import Notifier
    from task_escrow_service.services.settlement import SettlementEngine
    from task_escrow_service.services.task_lifecycle import TaskLifecycle


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: LedgerStore | None = None
    notification_client: NotificationClient | None = None
    notifier: Notifier | None = None
    identity_verifier: IdentityVerifier | None = None
    lifecycle: TaskLifecycle | None = None
    settlement: SettlementEngine | None = None
    disputes: DisputeArbitrator | None = None
    anomalies: AnomalySweep | None = None
    auditor: ConsistencyAuditor | None = None
    maintenance: MaintenanceService | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
