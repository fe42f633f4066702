"""Administrative deletes and periodic cleanup of abandoned tasks."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_escrow_service.logging import get_logger
from task_escrow_service.services.guards import (
    forbidden,
    require_admin,
    require_task,
    require_user,
)
from task_escrow_service.services.ledger_store import format_timestamp, parse_timestamp
from task_escrow_service.services.settlement import refund_task_payment

if TYPE_CHECKING:
    from task_escrow_service.config import RulesConfig
    from task_escrow_service.services.identity import Actor
    from task_escrow_service.services.ledger_store import LedgerStore
    from task_escrow_service.services.notifier import Notifier


class MaintenanceService:
    """
    Admin-only housekeeping.

    Deletes run as explicit ordered cascades inside one transaction:
    applications, payments, chat messages, anomalies, then the task itself.
    """

    def __init__(self, store: LedgerStore, notifier: Notifier, rules: RulesConfig) -> None:
        self._store = store
        self._notifier = notifier
        self._rules = rules

    def delete_task(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Delete a task and everything attached to it."""
        require_admin(actor)
        with self._store.transaction():
            require_task(self._store, task_id)
            removed = self._cascade_task(task_id)

        get_logger(__name__).info(
            "Task deleted", extra={"task_id": task_id, "deleted_by": actor.user_id, **removed}
        )
        return {"task_id": task_id, "deleted": True, **removed}

    def delete_user(self, actor: Actor, user_id: str) -> dict[str, Any]:
        """
        Delete a user.

        An employer takes their tasks with them. A student's applications
        are removed and any task they held goes back to ``posted``.
        """
        require_admin(actor)
        timestamp = format_timestamp(datetime.now(UTC))
        tasks_deleted = 0
        tasks_reopened = 0
        applications_deleted = 0

        with self._store.transaction():
            user = require_user(self._store, user_id)
            if user["role"] == "admin":
                raise forbidden("Admin accounts cannot be deleted")

            if user["role"] == "employer":
                for task in self._store.list_tasks(employer_id=user_id):
                    self._cascade_task(task["task_id"])
                    tasks_deleted += 1
            else:
                applications_deleted = self._store.delete_applications(student_id=user_id)
                for task in self._store.list_tasks(student_id=user_id):
                    if task["status"] in ("completed", "cancelled"):
                        continue
                    self._store.update_task(
                        task["task_id"],
                        {
                            "status": "posted",
                            "submission_status": "pending",
                            "accepted_student_id": None,
                            "accepted_at": None,
                            "rejection_reason": None,
                            "dispute_escrow_amount": None,
                            "disputed_at": None,
                            "dispute_chat_id": None,
                            "updated_at": timestamp,
                        },
                    )
                    tasks_reopened += 1

            messages_deleted = self._store.delete_chat_messages(sender_id=user_id)
            anomalies_deleted = self._store.delete_anomalies(user_id=user_id)
            self._store.delete_user(user_id)

        report = {
            "user_id": user_id,
            "role": user["role"],
            "tasks_deleted": tasks_deleted,
            "tasks_reopened": tasks_reopened,
            "applications_deleted": applications_deleted,
            "chat_messages_deleted": messages_deleted,
            "anomalies_deleted": anomalies_deleted,
        }
        get_logger(__name__).info("User deleted", extra={"deleted_by": actor.user_id, **report})
        return report

    def _cascade_task(self, task_id: str) -> dict[str, int]:
        return {
            "applications_deleted": self._store.delete_applications(task_id=task_id),
            "payments_deleted": self._store.delete_payments(task_id),
            "chat_messages_deleted": self._store.delete_chat_messages(task_id=task_id),
            "anomalies_deleted": self._store.delete_anomalies(task_id=task_id),
            "tasks_deleted": self._store.delete_task(task_id),
        }

    def cleanup(self, actor: Actor, now: datetime | None = None) -> dict[str, Any]:
        """
        Cancel tasks that are stuck.

        Disputed tasks are cancelled and the student's dispute escrow is
        handed back. Submissions untouched for ``stale_submission_days`` and
        in-progress tasks without a submission for ``stale_in_progress_days``
        are cancelled too. Pending or escrowed payments on every cancelled
        task are refunded to the employer.
        """
        require_admin(actor)
        now = now or datetime.now(UTC)
        timestamp = format_timestamp(now)
        submission_cutoff = now - timedelta(days=self._rules.stale_submission_days)
        in_progress_cutoff = now - timedelta(days=self._rules.stale_in_progress_days)

        report = {
            "disputed_tasks_resolved": 0,
            "stale_tasks_cancelled": 0,
            "payments_refunded": 0,
            "gold_refunded_to_employers": 0,
            "gold_returned_to_students": 0,
            "applications_deleted": 0,
            "chat_messages_deleted": 0,
            "anomalies_resolved": 0,
        }

        with self._store.transaction():
            for task in self._store.list_tasks(submission_status="disputed"):
                if task["status"] in ("completed", "cancelled"):
                    continue
                returned = self._return_dispute_escrow(task, actor.user_id, timestamp)
                report["gold_returned_to_students"] += returned
                self._cancel(task, actor.user_id, timestamp, "disputed task closed", report)
                report["disputed_tasks_resolved"] += 1

            stale: list[dict[str, Any]] = []
            for task in self._store.list_tasks(
                status="in_progress", submission_status="submitted"
            ):
                if _older_than(task["updated_at"], submission_cutoff):
                    stale.append(task)
            for task in self._store.list_tasks(status="in_progress", submission_status="pending"):
                if _older_than(task["accepted_at"] or task["updated_at"], in_progress_cutoff):
                    stale.append(task)
            for task in stale:
                self._cancel(task, actor.user_id, timestamp, "stale task cancelled", report)
                report["stale_tasks_cancelled"] += 1

        get_logger(__name__).info(
            "Cleanup finished", extra={"run_by": actor.user_id, **report}
        )
        return {"cleaned_at": timestamp, **report}

    def _return_dispute_escrow(self, task: dict[str, Any], actor_id: str, timestamp: str) -> int:
        returned = 0
        for penalty in self._store.list_payments(
            task_id=task["task_id"], payment_type="penalty", status="disputed"
        ):
            updated = self._store.update_payment(
                penalty["payment_id"],
                {
                    "status": "refunded",
                    "refunded_at": timestamp,
                    "refunded_by": actor_id,
                    "notes": "dispute escrow returned during cleanup",
                },
                expected_status="disputed",
            )
            if updated:
                self._store.credit_gold(penalty["student_id"], int(penalty["amount"]))
                returned += int(penalty["amount"])
        return returned

    def _cancel(
        self,
        task: dict[str, Any],
        actor_id: str,
        timestamp: str,
        note: str,
        report: dict[str, int],
    ) -> None:
        task_id = task["task_id"]
        self._store.update_task(
            task_id,
            {
                "status": "cancelled",
                "submission_status": "pending",
                "cancelled_at": timestamp,
                "updated_at": timestamp,
            },
            expected_status=task["status"],
        )
        refunded = refund_task_payment(self._store, task_id, actor_id, timestamp)
        if refunded is not None:
            report["payments_refunded"] += 1
            report["gold_refunded_to_employers"] += int(refunded["amount"])
        report["applications_deleted"] += self._store.delete_applications(task_id=task_id)
        report["chat_messages_deleted"] += self._store.delete_chat_messages(task_id=task_id)
        report["anomalies_resolved"] += self._store.close_task_anomalies(
            task_id, resolved_by=actor_id, notes=note, timestamp=timestamp
        )

        parties = [task["employer_id"]]
        if task["accepted_student_id"]:
            parties.append(task["accepted_student_id"])
        for party in parties:
            self._notifier.notify(
                party,
                "task_cancelled",
                "Task cancelled",
                f"'{task['title']}' was cancelled by an administrator ({note}).",
                related_task_id=task_id,
                related_user_id=actor_id,
            )


def _older_than(value: str | None, cutoff: datetime) -> bool:
    if value is None:
        return False
    return parse_timestamp(value) < cutoff
