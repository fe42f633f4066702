"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_escrow_service.clients.notification_client import NotificationClient
from task_escrow_service.config import get_settings
from task_escrow_service.core.state import init_app_state
from task_escrow_service.logging import get_logger, setup_logging
from task_escrow_service.services.anomaly_sweep import AnomalySweep
from task_escrow_service.services.consistency_auditor import ConsistencyAuditor
from task_escrow_service.services.dispute_arbitrator import DisputeArbitrator
from task_escrow_service.services.identity import IdentityVerifier
from task_escrow_service.services.ledger_store import LedgerStore
from task_escrow_service.services.maintenance import MaintenanceService
from task_escrow_service.services.notifier import Notifier
from task_escrow_service.services.settlement import SettlementEngine
from task_escrow_service.services.task_lifecycle import TaskLifecycle

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()
    rules = settings.rules

    store = LedgerStore(db_path=settings.database.path)
    state.store = store

    if settings.notifications.webhook_url:
        state.notification_client = NotificationClient(
            webhook_url=settings.notifications.webhook_url,
            timeout_seconds=settings.notifications.timeout_seconds,
        )
    notifier = Notifier(store, state.notification_client)
    state.notifier = notifier

    state.identity_verifier = IdentityVerifier(store, settings.identity.issuer_public_key)
    state.lifecycle = TaskLifecycle(store, notifier, rules)
    state.settlement = SettlementEngine(store, notifier, rules)
    state.disputes = DisputeArbitrator(store, notifier, rules)
    state.anomalies = AnomalySweep(store, notifier, rules)
    state.auditor = ConsistencyAuditor(store)
    state.maintenance = MaintenanceService(store, notifier, rules)

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "webhook_enabled": state.notification_client is not None,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})
    if state.notification_client is not None:
        state.notification_client.close()
    store.close()
