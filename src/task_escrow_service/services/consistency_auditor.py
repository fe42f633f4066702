"""Reconciles student balances against the settled-task ledger."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from task_escrow_service.logging import get_logger
from task_escrow_service.services.gamification import completion_days, star_rating
from task_escrow_service.services.guards import require_admin, require_user

if TYPE_CHECKING:
    from task_escrow_service.services.identity import Actor
    from task_escrow_service.services.ledger_store import LedgerStore


class ConsistencyAuditor:
    """
    Repairs drift between a student's recorded gold/task count and the ledger.

    Expected earnings are the confirmed tasks the student completed plus any
    released task payments to them on completed tasks not already counted,
    less the fees booked as penalty payments that were not handed back. A shortfall is credited with
    an atomic increment; a surplus is never clawed back. Each repair is
    keyed by (run_id, student_id), so replaying a run applies nothing twice.
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def audit_all(self, actor: Actor, run_id: str | None = None) -> dict[str, Any]:
        """Audit every student. A failure on one student never stops the rest."""
        require_admin(actor)
        run = run_id or f"audit-{uuid.uuid4()}"
        logger = get_logger(__name__)

        reports: list[dict[str, Any]] = []
        for student_id in self._store.list_student_ids_with_tasks():
            try:
                reports.append(self._audit_student(student_id, run))
            except Exception as exc:
                logger.exception(
                    "Audit failed for student",
                    extra={"student_id": student_id, "run_id": run},
                )
                reports.append({"student_id": student_id, "error": str(exc)})

        gold_recovered = sum(report.get("gold_recovered", 0) for report in reports)
        tasks_recovered = sum(report.get("tasks_recovered", 0) for report in reports)
        logger.info(
            "Consistency audit finished",
            extra={
                "run_id": run,
                "students": len(reports),
                "gold_recovered": gold_recovered,
                "tasks_recovered": tasks_recovered,
            },
        )
        return {
            "run_id": run,
            "students_audited": len(reports),
            "gold_recovered": gold_recovered,
            "tasks_recovered": tasks_recovered,
            "reports": reports,
        }

    def audit_student(
        self,
        actor: Actor,
        student_id: str,
        run_id: str | None = None,
    ) -> dict[str, Any]:
        """Audit a single student."""
        require_admin(actor)
        require_user(self._store, student_id)
        run = run_id or f"audit-{uuid.uuid4()}"
        report = self._audit_student(student_id, run)
        return {"run_id": run, **report}

    def _audit_student(self, student_id: str, run_id: str) -> dict[str, Any]:
        with self._store.transaction():
            user = require_user(self._store, student_id)
            expected_gold, counted = self._expected_earnings(student_id)
            expected_tasks = len(counted)
            actual_gold = int(user["gold"])
            actual_tasks = int(user["total_tasks_completed"])

            gold_deficit = max(0, expected_gold - actual_gold)
            task_deficit = max(0, expected_tasks - actual_tasks)
            already_applied = False
            if gold_deficit > 0 or task_deficit > 0:
                if self._store.record_audit_run(run_id, student_id, gold_deficit, task_deficit):
                    self._store.credit_gold(
                        student_id, gold_deficit, tasks_completed=task_deficit
                    )
                else:
                    already_applied = True
                    gold_deficit = 0
                    task_deficit = 0

            durations: list[float] = []
            for task in counted:
                if task["completed_at"] is None:
                    continue
                days = completion_days(task["accepted_at"], task["completed_at"])
                if days is not None:
                    durations.append(days)
            average = round(sum(durations) / len(durations), 1) if durations else 0.0
            total_tasks = actual_tasks + task_deficit
            stars = star_rating(total_tasks, average)
            self._store.update_user(
                student_id, {"average_completion_time": average, "star_rating": stars}
            )

        if gold_deficit > 0 or task_deficit > 0:
            get_logger(__name__).warning(
                "Ledger drift repaired",
                extra={
                    "student_id": student_id,
                    "run_id": run_id,
                    "gold_recovered": gold_deficit,
                    "tasks_recovered": task_deficit,
                },
            )
        return {
            "student_id": student_id,
            "expected_gold": expected_gold,
            "actual_gold": actual_gold,
            "expected_tasks": expected_tasks,
            "actual_tasks": actual_tasks,
            "gold_recovered": gold_deficit,
            "tasks_recovered": task_deficit,
            "already_applied": already_applied,
            "average_completion_time": average,
            "star_rating": stars,
        }

    def _expected_earnings(self, student_id: str) -> tuple[int, list[dict[str, Any]]]:
        """Return (expected net gold, tasks counted as completed) for a student."""
        earned = 0
        counted: list[dict[str, Any]] = []
        counted_ids: set[str] = set()

        for task in self._store.list_tasks(student_id=student_id, status="completed"):
            if task["submission_status"] != "confirmed":
                continue
            payment = self._store.get_active_task_payment(task["task_id"])
            if (
                payment is not None
                and payment["status"] == "released"
                and payment["student_id"] == student_id
            ):
                earned += _credited(payment)
            else:
                earned += int(task["gold"])
            counted.append(task)
            counted_ids.add(task["task_id"])

        for payment in self._store.list_payments(
            student_id=student_id, status="released", payment_type="task_payment"
        ):
            if payment["task_id"] in counted_ids:
                continue
            task = self._store.get_task(payment["task_id"])
            if task is None or task["status"] != "completed":
                continue
            earned += _credited(payment)
            counted.append(task)
            counted_ids.add(task["task_id"])

        charged = sum(
            int(penalty["amount"])
            for penalty in self._store.list_payments(student_id=student_id, payment_type="penalty")
            if penalty["status"] != "refunded"
        )
        return earned - charged, counted


def _credited(payment: dict[str, Any]) -> int:
    credited = payment["credited_amount"]
    return int(payment["amount"] if credited is None else credited)
