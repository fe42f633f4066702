"""Advisory anomaly detection and administration."""

from __future__ import annotations

import sqlite3
import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_escrow_service.logging import get_logger
from task_escrow_service.services.guards import (
    invalid_state,
    require_admin,
    require_anomaly,
    require_role,
    require_user,
)
from task_escrow_service.services.ledger_store import format_timestamp, parse_timestamp

if TYPE_CHECKING:
    from task_escrow_service.config import RulesConfig
    from task_escrow_service.services.identity import Actor
    from task_escrow_service.services.ledger_store import LedgerStore
    from task_escrow_service.services.notifier import Notifier

_SECONDS_PER_DAY = 86400

ANOMALY_TYPES = frozenset(
    {
        "employer_inactivity",
        "student_overwork",
        "missed_deadline",
        "delayed_payment",
        "task_stalled",
        "disputed_rejection",
        "company_name_change",
    }
)
SEVERITIES = frozenset({"low", "medium", "high", "critical"})
ANOMALY_STATUSES = frozenset({"open", "investigating", "resolved", "dismissed"})


def record_anomaly(
    store: LedgerStore,
    *,
    anomaly_type: str,
    severity: str,
    description: str,
    task_id: str | None = None,
    user_id: str | None = None,
    employer_id: str | None = None,
    student_id: str | None = None,
    changed_fields: list[str] | None = None,
    detected_at: str | None = None,
) -> dict[str, Any] | None:
    """
    Insert an anomaly inside its own savepoint.

    Anomalies are advisory: a storage failure here is logged and the
    surrounding ledger operation carries on. Returns the record, or None
    when it could not be stored.
    """
    record = {
        "anomaly_id": f"anm-{uuid.uuid4()}",
        "type": anomaly_type,
        "severity": severity,
        "status": "open",
        "task_id": task_id,
        "user_id": user_id,
        "employer_id": employer_id,
        "student_id": student_id,
        "description": description,
        "changed_fields": changed_fields or [],
        "detected_at": detected_at or format_timestamp(datetime.now(UTC)),
        "resolved_at": None,
        "resolved_by": None,
        "notes": None,
    }
    logger = get_logger(__name__)
    try:
        with store.transaction():
            store.insert_anomaly(record)
    except sqlite3.Error:
        logger.exception(
            "Failed to record anomaly",
            extra={"type": anomaly_type, "task_id": task_id, "user_id": user_id},
        )
        return None
    logger.info(
        "Anomaly recorded",
        extra={
            "anomaly_id": record["anomaly_id"],
            "type": anomaly_type,
            "severity": severity,
            "task_id": task_id,
            "user_id": user_id,
        },
    )
    return record


def _whole_days(elapsed: timedelta) -> int:
    """Completed days in an interval, rounded down."""
    return int(elapsed.total_seconds() // _SECONDS_PER_DAY)


def _tiered(value: float, medium: float, high: float, critical: float) -> str | None:
    """Map a measured value onto strictly-greater-than severity thresholds."""
    if value > critical:
        return "critical"
    if value > high:
        return "high"
    if value > medium:
        return "medium"
    return None


class AnomalySweep:
    """
    Scans the ledger for stalled or suspicious activity.

    The sweep only ever inserts anomaly records; it never touches tasks,
    payments or balances. Each detector skips a subject that already has
    an open or investigating anomaly of the same type, so running the
    sweep repeatedly over unchanged data creates nothing new.
    """

    def __init__(self, store: LedgerStore, notifier: Notifier, rules: RulesConfig) -> None:
        self._store = store
        self._notifier = notifier
        self._rules = rules

    def run_sweep(self, now: datetime | None = None) -> dict[str, Any]:
        """Run every detector once and report what was created."""
        moment = now or datetime.now(UTC)
        created: list[dict[str, Any]] = []
        created.extend(self._detect_employer_inactivity(moment))
        created.extend(self._detect_student_overwork(moment))
        created.extend(self._detect_missed_deadlines(moment))
        created.extend(self._detect_delayed_payments(moment))

        by_type: dict[str, int] = {}
        for anomaly in created:
            by_type[anomaly["type"]] = by_type.get(anomaly["type"], 0) + 1

        get_logger(__name__).info(
            "Anomaly sweep finished",
            extra={"created": len(created), "by_type": by_type},
        )
        return {
            "swept_at": format_timestamp(moment),
            "total_created": len(created),
            "created_by_type": by_type,
            "anomalies": created,
        }

    def _create_once(
        self,
        *,
        anomaly_type: str,
        subject_task_id: str | None,
        subject_user_id: str | None,
        **fields: Any,
    ) -> dict[str, Any] | None:
        with self._store.transaction():
            existing = self._store.find_active_anomaly(
                anomaly_type, task_id=subject_task_id, user_id=subject_user_id
            )
            if existing is not None:
                return None
            return record_anomaly(
                self._store,
                anomaly_type=anomaly_type,
                task_id=subject_task_id,
                user_id=subject_user_id,
                **fields,
            )

    def _detect_employer_inactivity(self, now: datetime) -> list[dict[str, Any]]:
        cutoff = now - timedelta(days=self._rules.inactivity_days)
        stale_by_task: dict[str, dict[str, Any]] = {}
        for application in self._store.list_applications(status="evaluating"):
            if parse_timestamp(application["updated_at"]) < cutoff:
                stale_by_task.setdefault(application["task_id"], application)

        created: list[dict[str, Any]] = []
        for task_id, application in stale_by_task.items():
            anomaly = self._create_once(
                anomaly_type="employer_inactivity",
                subject_task_id=task_id,
                subject_user_id=application["employer_id"],
                severity="medium",
                description=(
                    "Employer has left an application in evaluation for more than "
                    f"{self._rules.inactivity_days} days"
                ),
                employer_id=application["employer_id"],
                student_id=application["student_id"],
                detected_at=format_timestamp(now),
            )
            if anomaly is not None:
                created.append(anomaly)
        return created

    def _detect_student_overwork(self, now: datetime) -> list[dict[str, Any]]:
        created: list[dict[str, Any]] = []
        for student_id, count in sorted(self._store.count_in_progress_by_student().items()):
            severity = _tiered(
                count,
                self._rules.overwork_threshold,
                self._rules.overwork_high,
                self._rules.overwork_critical,
            )
            if severity is None:
                continue
            anomaly = self._create_once(
                anomaly_type="student_overwork",
                subject_task_id=None,
                subject_user_id=student_id,
                severity=severity,
                description=f"Student has {count} tasks in progress at once",
                student_id=student_id,
                detected_at=format_timestamp(now),
            )
            if anomaly is not None:
                created.append(anomaly)
        return created

    def _detect_missed_deadlines(self, now: datetime) -> list[dict[str, Any]]:
        created: list[dict[str, Any]] = []
        for task in self._store.list_tasks(status="in_progress"):
            if task["deadline"] is None:
                continue
            deadline = parse_timestamp(task["deadline"])
            if deadline >= now:
                continue
            overdue_days = _whole_days(now - deadline)
            severity = _tiered(
                overdue_days,
                0,
                self._rules.deadline_high_days,
                self._rules.deadline_critical_days,
            )
            anomaly = self._create_once(
                anomaly_type="missed_deadline",
                subject_task_id=task["task_id"],
                subject_user_id=task["accepted_student_id"],
                severity=severity or "medium",
                description=f"Task '{task['title']}' missed its deadline {overdue_days} day(s) ago",
                employer_id=task["employer_id"],
                student_id=task["accepted_student_id"],
                detected_at=format_timestamp(now),
            )
            if anomaly is not None:
                created.append(anomaly)
        return created

    def _detect_delayed_payments(self, now: datetime) -> list[dict[str, Any]]:
        created: list[dict[str, Any]] = []
        for task in self._store.list_tasks(status="completed"):
            if task["completed_at"] is None:
                continue
            payment = self._store.get_active_task_payment(task["task_id"])
            if payment is None or payment["status"] not in ("pending", "escrowed"):
                continue
            waiting = now - parse_timestamp(task["completed_at"])
            if waiting <= timedelta(days=self._rules.delayed_payment_days):
                continue
            waiting_days = _whole_days(waiting)
            severity = (
                "critical" if waiting_days > self._rules.delayed_payment_critical_days else "high"
            )
            anomaly = self._create_once(
                anomaly_type="delayed_payment",
                subject_task_id=task["task_id"],
                subject_user_id=task["employer_id"],
                severity=severity,
                description=(
                    f"Payment for '{task['title']}' has been {payment['status']} for "
                    f"{waiting_days} day(s) after completion"
                ),
                employer_id=task["employer_id"],
                student_id=task["accepted_student_id"],
                detected_at=format_timestamp(now),
            )
            if anomaly is not None:
                created.append(anomaly)
        return created

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def list_anomalies(
        self,
        actor: Actor,
        *,
        status: str | None = None,
        anomaly_type: str | None = None,
        severity: str | None = None,
    ) -> list[dict[str, Any]]:
        """Admins see everything; other users only anomalies that name them."""
        involving = None if actor.is_admin else actor.user_id
        return self._store.list_anomalies(
            status=status,
            anomaly_type=anomaly_type,
            severity=severity,
            involving_user=involving,
        )

    def get_anomaly(self, actor: Actor, anomaly_id: str) -> dict[str, Any]:
        require_admin(actor)
        return require_anomaly(self._store, anomaly_id)

    def resolve_anomaly(self, actor: Actor, anomaly_id: str, notes: str | None) -> dict[str, Any]:
        return self._close(actor, anomaly_id, "resolved", notes)

    def dismiss_anomaly(self, actor: Actor, anomaly_id: str, notes: str | None) -> dict[str, Any]:
        return self._close(actor, anomaly_id, "dismissed", notes)

    def mark_investigating(
        self,
        actor: Actor,
        anomaly_id: str,
        notes: str | None,
    ) -> dict[str, Any]:
        """Move an open anomaly under investigation."""
        require_admin(actor)
        anomaly = require_anomaly(self._store, anomaly_id)
        updates: dict[str, Any] = {"status": "investigating"}
        if notes is not None:
            updates["notes"] = notes
        updated = self._store.update_anomaly(anomaly_id, updates, expected_status="open")
        if updated == 0:
            raise invalid_state(
                "Only open anomalies can be investigated", status=anomaly["status"]
            )
        return require_anomaly(self._store, anomaly_id)

    def _close(
        self,
        actor: Actor,
        anomaly_id: str,
        status: str,
        notes: str | None,
    ) -> dict[str, Any]:
        require_admin(actor)
        anomaly = require_anomaly(self._store, anomaly_id)
        updated = self._store.update_anomaly(
            anomaly_id,
            {
                "status": status,
                "resolved_at": format_timestamp(datetime.now(UTC)),
                "resolved_by": actor.user_id,
                "notes": anomaly["notes"] if notes is None else notes,
            },
            expected_status=("open", "investigating"),
        )
        if updated == 0:
            raise invalid_state("Anomaly is already closed", status=anomaly["status"])
        get_logger(__name__).info(
            "Anomaly closed",
            extra={"anomaly_id": anomaly_id, "status": status, "closed_by": actor.user_id},
        )
        return require_anomaly(self._store, anomaly_id)

    # ------------------------------------------------------------------
    # Company-name churn
    # ------------------------------------------------------------------

    def change_company_name(self, actor: Actor, company_name: str) -> dict[str, Any]:
        """
        Store a new company name for an employer.

        Setting a first name is free. Renaming counts as a change, and from
        the second change on a ``company_name_change`` anomaly is opened
        unless one is already open for the employer.
        """
        require_role(actor, "employer")
        company_name = company_name.strip()
        with self._store.transaction():
            user = require_user(self._store, actor.user_id)
            previous = user["company_name"]
            if previous == company_name:
                return user

            is_rename = previous is not None
            changes = user["company_name_changes"] + (1 if is_rename else 0)
            self._store.update_user(
                actor.user_id,
                {"company_name": company_name, "company_name_changes": changes},
            )

            if is_rename and changes >= 2:
                existing = self._store.find_active_anomaly(
                    "company_name_change", user_id=actor.user_id
                )
                if existing is None:
                    record_anomaly(
                        self._store,
                        anomaly_type="company_name_change",
                        severity="medium",
                        description=(
                            "Employer changed company name multiple times. "
                            f"Previous: '{previous}', new: '{company_name}'"
                        ),
                        user_id=actor.user_id,
                        employer_id=actor.user_id,
                    )
                    self._notifier.notify_admins(
                        "company_name_change",
                        "Repeated company name change",
                        f"Employer {actor.user_id} renamed their company to '{company_name}'.",
                        related_user_id=actor.user_id,
                    )

        get_logger(__name__).info(
            "Company name changed",
            extra={"employer_id": actor.user_id, "changes": changes},
        )
        return require_user(self._store, actor.user_id)
