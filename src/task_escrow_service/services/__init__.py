"""Service layer components."""

from task_escrow_service.services.anomaly_sweep import AnomalySweep
from task_escrow_service.services.consistency_auditor import ConsistencyAuditor
from task_escrow_service.services.dispute_arbitrator import DisputeArbitrator
from task_escrow_service.services.identity import IdentityVerifier
from task_escrow_service.services.ledger_store import LedgerStore
from task_escrow_service.services.maintenance import MaintenanceService
from task_escrow_service.services.notifier import Notifier
from task_escrow_service.services.settlement import SettlementEngine
from task_escrow_service.services.task_lifecycle import TaskLifecycle

__all__ = [
    "AnomalySweep",
    "ConsistencyAuditor",
    "DisputeArbitrator",
    "IdentityVerifier",
    "LedgerStore",
    "MaintenanceService",
    "Notifier",
    "SettlementEngine",
    "TaskLifecycle",
]
