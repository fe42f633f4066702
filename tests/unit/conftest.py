"""Unit test fixtures: cache reset plus a marketplace on a temp database."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from task_escrow_service.config import clear_settings_cache
from task_escrow_service.core.state import reset_app_state
from task_escrow_service.services.anomaly_sweep import AnomalySweep
from task_escrow_service.services.consistency_auditor import ConsistencyAuditor
from task_escrow_service.services.dispute_arbitrator import DisputeArbitrator
from task_escrow_service.services.ledger_store import LedgerStore
from task_escrow_service.services.maintenance import MaintenanceService
from task_escrow_service.services.notifier import Notifier
from task_escrow_service.services.settlement import SettlementEngine
from task_escrow_service.services.task_lifecycle import TaskLifecycle
from tests.helpers import (
    ADMIN,
    EMPLOYER,
    OTHER_EMPLOYER,
    OTHER_STUDENT,
    STUDENT,
    Marketplace,
    make_rules,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[LedgerStore]:
    """A fresh ledger database per test."""
    ledger = LedgerStore(db_path=str(tmp_path / "ledger.db"))
    yield ledger
    ledger.close()


@pytest.fixture
def market(store: LedgerStore) -> Marketplace:
    """All ledger services on the temp store, with the standard cast registered."""
    rules = make_rules()
    notifier = Notifier(store, None)
    marketplace = Marketplace(
        store=store,
        lifecycle=TaskLifecycle(store, notifier, rules),
        settlement=SettlementEngine(store, notifier, rules),
        disputes=DisputeArbitrator(store, notifier, rules),
        sweep=AnomalySweep(store, notifier, rules),
        auditor=ConsistencyAuditor(store),
        maintenance=MaintenanceService(store, notifier, rules),
    )
    marketplace.register(EMPLOYER, OTHER_EMPLOYER, STUDENT, OTHER_STUDENT, ADMIN)
    return marketplace
