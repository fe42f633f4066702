"""Escrow funding, settlement and cancellation for tasks."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from task_escrow_service.logging import get_logger
from task_escrow_service.services.gamification import (
    bonus_gold,
    bonus_xp,
    completion_days,
    proportional_fee,
    rolling_average,
    star_rating,
)
from task_escrow_service.services.guards import (
    conflict,
    forbidden,
    invalid_state,
    require_accepted_student,
    require_admin,
    require_payment,
    require_role,
    require_task,
    require_task_owner,
    require_user,
)
from task_escrow_service.services.ledger_store import format_timestamp

if TYPE_CHECKING:
    from task_escrow_service.config import RulesConfig
    from task_escrow_service.services.identity import Actor
    from task_escrow_service.services.ledger_store import LedgerStore
    from task_escrow_service.services.notifier import Notifier


def record_completion(
    store: LedgerStore,
    student_id: str,
    gold: int,
    accepted_at: str | None,
    completed_at: str,
    *,
    xp: int = 0,
) -> dict[str, Any]:
    """
    Credit a student for one completed task and refresh their rating.

    Must run inside the caller's transaction. The balance and counter move
    with an atomic increment; the average and star rating are derived from
    the row as it stands after that increment.
    """
    before = require_user(store, student_id)
    store.credit_gold(student_id, gold, tasks_completed=1, xp=xp)

    days = completion_days(accepted_at, completed_at)
    average = float(before["average_completion_time"])
    if days is not None:
        average = rolling_average(average, int(before["total_tasks_completed"]), days)
    total = int(before["total_tasks_completed"]) + 1
    stars = star_rating(total, average)
    store.update_user(student_id, {"average_completion_time": average, "star_rating": stars})
    return {"gold_credited": gold, "total_tasks_completed": total, "star_rating": stars}


def release_task_payment(
    store: LedgerStore,
    task: dict[str, Any],
    amount: int,
    released_by: str,
    timestamp: str,
    notes: str | None = None,
) -> str:
    """Create or update the task's active payment as released and credited. Returns its id."""
    payment = store.get_active_task_payment(task["task_id"])
    if payment is not None:
        if payment["status"] not in ("pending", "escrowed"):
            raise conflict("Payment already processed", payment_id=payment["payment_id"])
        store.update_payment(
            payment["payment_id"],
            {
                "status": "released",
                "amount": amount,
                "credited_amount": amount,
                "student_id": task["accepted_student_id"],
                "released_at": timestamp,
                "released_by": released_by,
                "notes": notes,
            },
            expected_status=("pending", "escrowed"),
        )
        return str(payment["payment_id"])

    payment_id = f"pay-{uuid.uuid4()}"
    store.insert_payment(
        {
            "payment_id": payment_id,
            "task_id": task["task_id"],
            "employer_id": task["employer_id"],
            "student_id": task["accepted_student_id"],
            "amount": amount,
            "status": "released",
            "type": "task_payment",
            "released_at": timestamp,
            "released_by": released_by,
            "credited_amount": amount,
            "notes": notes,
            "created_at": timestamp,
        }
    )
    return payment_id


def refund_task_payment(
    store: LedgerStore,
    task_id: str,
    refunded_by: str,
    timestamp: str,
) -> dict[str, Any] | None:
    """Refund the task's pending or escrowed payment back to the employer, if any."""
    payment = store.get_active_task_payment(task_id)
    if payment is None or payment["status"] not in ("pending", "escrowed"):
        return None
    store.update_payment(
        payment["payment_id"],
        {"status": "refunded", "refunded_at": timestamp, "refunded_by": refunded_by},
        expected_status=("pending", "escrowed"),
    )
    return payment


def record_penalty(
    store: LedgerStore,
    task: dict[str, Any],
    student_id: str,
    amount: int,
    *,
    status: str,
    timestamp: str,
    notes: str,
) -> str:
    """
    Book a fee debited from a student as a ``penalty`` payment.

    The balance itself is debited by the caller; this row is what lets the
    consistency auditor tell a fee apart from drift.
    """
    payment_id = f"pay-{uuid.uuid4()}"
    store.insert_payment(
        {
            "payment_id": payment_id,
            "task_id": task["task_id"],
            "employer_id": task["employer_id"],
            "student_id": student_id,
            "amount": amount,
            "status": status,
            "type": "penalty",
            "released_at": timestamp if status == "released" else None,
            "escrowed_at": timestamp if status == "disputed" else None,
            "notes": notes,
            "created_at": timestamp,
        }
    )
    return payment_id


class SettlementEngine:
    """
    Moves gold between employers and students.

    Two release paths exist and are deliberately kept apart:
    ``release_payment`` credits the full escrowed amount, while
    ``release_payment_with_bonus`` credits a 10% bonus plus XP scaled by
    the task's priority.
    """

    def __init__(self, store: LedgerStore, notifier: Notifier, rules: RulesConfig) -> None:
        self._store = store
        self._notifier = notifier
        self._rules = rules

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def fund_escrow(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """
        Lock the task's gold in escrow.

        Re-funding is refused once a payment has left ``pending``; a pending
        payment is reused rather than duplicated.
        """
        timestamp = format_timestamp(datetime.now(UTC))
        with self._store.transaction():
            task = require_task(self._store, task_id)
            require_task_owner(actor, task)
            if task["status"] != "in_progress":
                raise invalid_state("Escrow can only be funded for in-progress tasks")

            payment = self._store.get_active_task_payment(task_id)
            if payment is not None and payment["status"] != "pending":
                raise conflict(
                    "Payment already processed",
                    payment_id=payment["payment_id"],
                    status=payment["status"],
                )

            if payment is not None:
                self._store.update_payment(
                    payment["payment_id"],
                    {"status": "escrowed", "escrowed_at": timestamp, "amount": task["gold"]},
                    expected_status="pending",
                )
                payment_id = payment["payment_id"]
            else:
                payment_id = f"pay-{uuid.uuid4()}"
                self._store.insert_payment(
                    {
                        "payment_id": payment_id,
                        "task_id": task_id,
                        "employer_id": task["employer_id"],
                        "student_id": task["accepted_student_id"],
                        "amount": task["gold"],
                        "status": "escrowed",
                        "type": "task_payment",
                        "escrowed_at": timestamp,
                        "created_at": timestamp,
                    }
                )
                self._notifier.notify(
                    task["accepted_student_id"],
                    "escrow_funded",
                    "Payment secured",
                    f"{task['gold']} gold for '{task['title']}' is now held in escrow.",
                    related_task_id=task_id,
                    related_user_id=task["employer_id"],
                )

        get_logger(__name__).info(
            "Escrow funded",
            extra={"task_id": task_id, "payment_id": payment_id, "amount": task["gold"]},
        )
        return require_payment(self._store, payment_id)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def confirm_submission(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """
        Accept submitted work and pay the student the task's gold.

        The submission status check is the conditional update itself, so of
        several concurrent confirmations only one credits the student.
        """
        timestamp = format_timestamp(datetime.now(UTC))
        with self._store.transaction():
            task = require_task(self._store, task_id)
            require_task_owner(actor, task)
            student_id = task["accepted_student_id"]
            if student_id is None:
                raise invalid_state("Task has no accepted student")

            confirmed = self._store.update_task(
                task_id,
                {
                    "submission_status": "confirmed",
                    "status": "completed",
                    "completed_at": timestamp,
                    "updated_at": timestamp,
                },
                expected_status="in_progress",
                expected_submission_status="submitted",
            )
            if confirmed == 0:
                raise invalid_state(
                    "Only submitted work on an in-progress task can be confirmed",
                    status=task["status"],
                    submission_status=task["submission_status"],
                )

            payment_id = release_task_payment(
                self._store, task, task["gold"], actor.user_id, timestamp
            )
            summary = record_completion(
                self._store, student_id, task["gold"], task["accepted_at"], timestamp
            )
            self._notifier.notify(
                student_id,
                "payment_released",
                "Work confirmed",
                f"Your work on '{task['title']}' was confirmed. {task['gold']} gold credited.",
                related_task_id=task_id,
                related_user_id=actor.user_id,
                metadata={"payment_id": payment_id, "amount": task["gold"]},
            )

        get_logger(__name__).info(
            "Submission confirmed",
            extra={"task_id": task_id, "student_id": student_id, "gold": task["gold"]},
        )
        return {"task": require_task(self._store, task_id), "payment_id": payment_id, **summary}

    def cancel_by_student(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """
        The accepted student walks away from a task.

        The cancellation fee is ceil(gold * ratio) and is charged even if it
        pushes the balance below zero. Any escrow the employer funded is
        refunded so the slot can be funded again.
        """
        timestamp = format_timestamp(datetime.now(UTC))
        with self._store.transaction():
            task = require_task(self._store, task_id)
            require_accepted_student(actor, task)
            if task["submission_status"] == "disputed":
                raise invalid_state(
                    "A task under dispute cannot be cancelled until the dispute is resolved",
                    submission_status="disputed",
                )
            fee = proportional_fee(task["gold"], self._rules.cancellation_fee_ratio)

            cancelled = self._store.update_task(
                task_id,
                {
                    "status": "cancelled",
                    "submission_status": "pending",
                    "cancelled_at": timestamp,
                    "updated_at": timestamp,
                },
                expected_status=("in_progress", "posted"),
            )
            if cancelled == 0:
                raise invalid_state(
                    "Only posted or in-progress tasks can be cancelled", status=task["status"]
                )
            self._store.debit_gold(actor.user_id, fee, require_funds=False)
            if fee > 0:
                record_penalty(
                    self._store,
                    task,
                    actor.user_id,
                    fee,
                    status="released",
                    timestamp=timestamp,
                    notes="cancellation fee",
                )
            refunded = refund_task_payment(self._store, task_id, actor.user_id, timestamp)

            self._notifier.notify(
                task["employer_id"],
                "task_cancelled",
                "Student cancelled",
                f"The student cancelled '{task['title']}'. The slot is open again.",
                related_task_id=task_id,
                related_user_id=actor.user_id,
                metadata={"fee": fee},
            )

        get_logger(__name__).info(
            "Task cancelled by student",
            extra={
                "task_id": task_id,
                "student_id": actor.user_id,
                "fee": fee,
                "escrow_refunded": refunded is not None,
            },
        )
        return {
            "task": require_task(self._store, task_id),
            "fee": fee,
            "balance": require_user(self._store, actor.user_id)["gold"],
        }

    def release_payment(self, actor: Actor, payment_id: str) -> dict[str, Any]:
        """Release an escrowed payment on a completed task, crediting its full amount."""
        timestamp = format_timestamp(datetime.now(UTC))
        with self._store.transaction():
            payment, task = self._releasable(actor, payment_id)
            self._mark_released(payment_id, actor.user_id, timestamp, payment["amount"])
            summary = record_completion(
                self._store,
                payment["student_id"],
                payment["amount"],
                task["accepted_at"],
                task["completed_at"] or timestamp,
            )
            self._notifier.notify(
                payment["student_id"],
                "payment_released",
                "Payment released",
                f"{payment['amount']} gold for '{task['title']}' was released to you.",
                related_task_id=task["task_id"],
                related_user_id=actor.user_id,
                metadata={"payment_id": payment_id, "amount": payment["amount"]},
            )

        get_logger(__name__).info(
            "Payment released",
            extra={"payment_id": payment_id, "amount": payment["amount"]},
        )
        return {"payment": require_payment(self._store, payment_id), **summary}

    def release_payment_with_bonus(self, actor: Actor, payment_id: str) -> dict[str, Any]:
        """
        Release an escrowed payment through the bonus/XP path.

        Credits floor(amount * 0.1) gold and floor(floor(amount / 10) * m)
        XP, where m is 1.5, 1.2 or 1.0 for high, medium or low priority.
        The completed-task counter and rating move as in a full release.
        """
        timestamp = format_timestamp(datetime.now(UTC))
        with self._store.transaction():
            payment, task = self._releasable(actor, payment_id)
            gold = bonus_gold(payment["amount"])
            xp = bonus_xp(payment["amount"], task["priority_level"])
            self._mark_released(payment_id, actor.user_id, timestamp, gold)
            summary = record_completion(
                self._store,
                payment["student_id"],
                gold,
                task["accepted_at"],
                task["completed_at"] or timestamp,
                xp=xp,
            )
            self._notifier.notify(
                payment["student_id"],
                "payment_released",
                "Bonus released",
                f"You earned {gold} bonus gold and {xp} XP for '{task['title']}'.",
                related_task_id=task["task_id"],
                related_user_id=actor.user_id,
                metadata={"payment_id": payment_id, "bonus_gold": gold, "xp": xp},
            )

        get_logger(__name__).info(
            "Payment released with bonus",
            extra={"payment_id": payment_id, "bonus_gold": gold, "xp": xp},
        )
        return {
            "payment": require_payment(self._store, payment_id),
            "bonus_gold": gold,
            "xp_awarded": xp,
            **summary,
        }

    def _releasable(self, actor: Actor, payment_id: str) -> tuple[dict[str, Any], dict[str, Any]]:
        payment = require_payment(self._store, payment_id)
        if not actor.is_admin and payment["employer_id"] != actor.user_id:
            raise forbidden("Only the paying employer or an admin can release this payment")
        if payment["type"] != "task_payment" or payment["status"] != "escrowed":
            raise invalid_state(
                "Only escrowed task payments can be released", status=payment["status"]
            )
        if payment["student_id"] is None:
            raise invalid_state("Payment has no payee")
        task = require_task(self._store, payment["task_id"])
        if task["status"] != "completed":
            raise invalid_state("Payments are released only for completed tasks")
        return payment, task

    def _mark_released(
        self,
        payment_id: str,
        released_by: str,
        timestamp: str,
        credited_amount: int,
    ) -> None:
        released = self._store.update_payment(
            payment_id,
            {
                "status": "released",
                "released_at": timestamp,
                "released_by": released_by,
                "credited_amount": credited_amount,
            },
            expected_status="escrowed",
        )
        if released == 0:
            raise invalid_state("Payment was released concurrently", payment_id=payment_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task_payment(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """The task's payment, visible to its employer, its payee and admins."""
        task = require_task(self._store, task_id)
        if not actor.is_admin and actor.user_id not in (
            task["employer_id"],
            task["accepted_student_id"],
        ):
            raise forbidden("You are not a party to this task")
        payment = self._store.get_active_task_payment(task_id)
        if payment is None:
            payments = self._store.list_payments(task_id=task_id, payment_type="task_payment")
            if not payments:
                return {"task_id": task_id, "payment": None}
            payment = payments[0]
        return {"task_id": task_id, "payment": payment}

    def list_student_payments(self, actor: Actor) -> list[dict[str, Any]]:
        """Payments addressed to the calling student."""
        require_role(actor, "student")
        return self._store.list_payments(student_id=actor.user_id)

    def list_payments(
        self,
        actor: Actor,
        *,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """Every payment in the ledger (admin view)."""
        require_admin(actor)
        return self._store.list_payments(status=status)
