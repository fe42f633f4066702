"""Dispute opening and arbitration for rejected submissions."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.logging import get_logger
from task_escrow_service.services.anomaly_sweep import record_anomaly
from task_escrow_service.services.gamification import proportional_fee
from task_escrow_service.services.guards import (
    invalid_state,
    require_accepted_student,
    require_admin,
    require_task,
)
from task_escrow_service.services.ledger_store import format_timestamp
from task_escrow_service.services.settlement import (
    record_completion,
    record_penalty,
    release_task_payment,
)

if TYPE_CHECKING:
    from task_escrow_service.config import RulesConfig
    from task_escrow_service.services.identity import Actor
    from task_escrow_service.services.ledger_store import LedgerStore
    from task_escrow_service.services.notifier import Notifier

_DEFAULT_EMPLOYER_WIN_REASON = "Dispute resolved in favour of the employer"


class DisputeArbitrator:
    """
    Handles contested rejections.

    Opening a dispute costs the student ceil(gold * ratio), held as the
    dispute escrow. An admin then rules:

    - student wins: paid gold + escrow + ceil(gold * ratio), the task is
      completed and confirmed, and the employer may only post low-priority
      tasks for the restriction window;
    - employer wins: the escrow is forfeited and the submission goes back
      to rejected with the ruling's reason.
    """

    def __init__(self, store: LedgerStore, notifier: Notifier, rules: RulesConfig) -> None:
        self._store = store
        self._notifier = notifier
        self._rules = rules

    def open_dispute(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """The accepted student contests a rejection and pays the dispute escrow."""
        now = datetime.now(UTC)
        timestamp = format_timestamp(now)
        chat_id = f"dsp-{uuid.uuid4()}"

        with self._store.transaction():
            task = require_task(self._store, task_id)
            require_accepted_student(actor, task)
            if task["disputed_at"] is not None:
                raise invalid_state("The ruling on this task's dispute is final")
            fee = proportional_fee(task["gold"], self._rules.dispute_fee_ratio)

            opened = self._store.update_task(
                task_id,
                {
                    "submission_status": "disputed",
                    "dispute_escrow_amount": fee,
                    "disputed_at": timestamp,
                    "dispute_chat_id": chat_id,
                    "updated_at": timestamp,
                },
                expected_status="in_progress",
                expected_submission_status="rejected",
            )
            if opened == 0:
                raise invalid_state(
                    "Only rejected submissions on in-progress tasks can be disputed",
                    status=task["status"],
                    submission_status=task["submission_status"],
                )

            debited = self._store.debit_gold(actor.user_id, fee, require_funds=True)
            if debited == 0:
                raise ServiceError(
                    "INSUFFICIENT_FUNDS",
                    "Not enough gold to open a dispute",
                    402,
                    {"required": fee},
                )
            if fee > 0:
                record_penalty(
                    self._store,
                    task,
                    actor.user_id,
                    fee,
                    status="disputed",
                    timestamp=timestamp,
                    notes="dispute escrow",
                )

            reason = (task["rejection_reason"] or "").strip()
            weak_reason = len(reason) < self._rules.min_reason_length
            record_anomaly(
                self._store,
                anomaly_type="disputed_rejection",
                severity="high" if weak_reason else "medium",
                description=(
                    f"Student disputed the rejection of '{task['title']}'. "
                    f"Rejection reason: {reason or '(none given)'}"
                ),
                task_id=task_id,
                user_id=actor.user_id,
                employer_id=task["employer_id"],
                student_id=actor.user_id,
                detected_at=timestamp,
            )

            self._store.insert_chat_message(
                {
                    "message_id": f"msg-{uuid.uuid4()}",
                    "task_id": task_id,
                    "sender_id": actor.user_id,
                    "text": (
                        f"Dispute opened for '{task['title']}'. "
                        f"Rejection reason: {reason or '(none given)'}"
                    ),
                    "created_at": timestamp,
                }
            )

            self._notifier.notify_admins(
                "dispute_opened",
                "New dispute",
                f"A student disputed the rejection of '{task['title']}'.",
                related_task_id=task_id,
                related_user_id=actor.user_id,
                metadata={"dispute_escrow_amount": fee},
            )
            self._notifier.notify(
                task["employer_id"],
                "dispute_opened",
                "Rejection disputed",
                f"The student disputed your rejection of '{task['title']}'.",
                related_task_id=task_id,
                related_user_id=actor.user_id,
            )

        get_logger(__name__).info(
            "Dispute opened",
            extra={"task_id": task_id, "student_id": actor.user_id, "escrow": fee},
        )
        return require_task(self._store, task_id)

    def resolve_dispute(
        self,
        actor: Actor,
        task_id: str,
        winner: str,
        reason: str | None,
    ) -> dict[str, Any]:
        """An admin rules on a disputed submission."""
        require_admin(actor)
        if winner not in ("student", "employer"):
            raise ServiceError(
                "VALIDATION_ERROR", "winner must be 'student' or 'employer'", 400, {}
            )

        now = datetime.now(UTC)
        timestamp = format_timestamp(now)
        with self._store.transaction():
            task = require_task(self._store, task_id)
            if task["submission_status"] != "disputed":
                raise invalid_state(
                    "Task is not under dispute", submission_status=task["submission_status"]
                )
            student_id = task["accepted_student_id"]
            if student_id is None:
                raise invalid_state("Disputed task has no accepted student")
            escrow = int(task["dispute_escrow_amount"] or 0)

            if winner == "student":
                result = self._rule_for_student(task, student_id, escrow, actor, now)
            else:
                result = self._rule_for_employer(task, student_id, reason, actor, timestamp)

            closing_note = f"Dispute resolved in favour of the {winner}"
            if reason:
                closing_note += f": {reason}"
            self._store.close_task_anomalies(
                task_id, resolved_by=actor.user_id, notes=closing_note, timestamp=timestamp
            )

            for party in (student_id, task["employer_id"]):
                self._notifier.notify(
                    party,
                    "dispute_resolved",
                    "Dispute resolved",
                    f"The dispute on '{task['title']}' was resolved in favour of the {winner}.",
                    related_task_id=task_id,
                    related_user_id=actor.user_id,
                    metadata={"winner": winner, **result},
                )

        get_logger(__name__).info(
            "Dispute resolved",
            extra={"task_id": task_id, "winner": winner, "resolved_by": actor.user_id, **result},
        )
        return {"task": require_task(self._store, task_id), "winner": winner, **result}

    def _rule_for_student(
        self,
        task: dict[str, Any],
        student_id: str,
        escrow: int,
        actor: Actor,
        now: datetime,
    ) -> dict[str, Any]:
        timestamp = format_timestamp(now)
        penalty = proportional_fee(task["gold"], self._rules.dispute_fee_ratio)
        payout = task["gold"] + escrow + penalty

        updated = self._store.update_task(
            task["task_id"],
            {
                "status": "completed",
                "submission_status": "confirmed",
                "completed_at": timestamp,
                "updated_at": timestamp,
            },
            expected_submission_status="disputed",
        )
        if updated == 0:
            raise invalid_state("Dispute was resolved concurrently")

        payment_id = release_task_payment(
            self._store,
            task,
            payout,
            actor.user_id,
            timestamp,
            notes="dispute payout: task gold + dispute escrow + employer penalty",
        )
        self._settle_escrow_penalty(task["task_id"], actor.user_id, timestamp, "returned in payout")
        record_completion(self._store, student_id, payout, task["accepted_at"], timestamp)

        restriction_until = format_timestamp(now + timedelta(days=self._rules.restriction_days))
        self._store.update_user(
            task["employer_id"],
            {"restriction_until": restriction_until, "low_priority_only": True},
        )
        return {
            "payout": payout,
            "payment_id": payment_id,
            "employer_restricted_until": restriction_until,
        }

    def _rule_for_employer(
        self,
        task: dict[str, Any],
        student_id: str,
        reason: str | None,
        actor: Actor,
        timestamp: str,
    ) -> dict[str, Any]:
        rejection_reason = (reason or "").strip() or task["rejection_reason"]
        rejection_reason = rejection_reason or _DEFAULT_EMPLOYER_WIN_REASON
        updated = self._store.update_task(
            task["task_id"],
            {
                "submission_status": "rejected",
                "rejection_reason": rejection_reason,
                "updated_at": timestamp,
            },
            expected_submission_status="disputed",
        )
        if updated == 0:
            raise invalid_state("Dispute was resolved concurrently")
        self._settle_escrow_penalty(task["task_id"], actor.user_id, timestamp, "forfeited")
        return {"payout": 0, "forfeited_escrow": int(task["dispute_escrow_amount"] or 0)}

    def _settle_escrow_penalty(
        self,
        task_id: str,
        actor_id: str,
        timestamp: str,
        outcome: str,
    ) -> None:
        """Settle the held dispute escrow record once the ruling is made."""
        for penalty in self._store.list_payments(
            task_id=task_id, payment_type="penalty", status="disputed"
        ):
            self._store.update_payment(
                penalty["payment_id"],
                {
                    "status": "released",
                    "released_at": timestamp,
                    "released_by": actor_id,
                    "notes": f"dispute escrow {outcome}",
                },
                expected_status="disputed",
            )

    def list_disputes(self, actor: Actor) -> list[dict[str, Any]]:
        """Tasks currently under dispute (admin view)."""
        require_admin(actor)
        return self._store.list_tasks(submission_status="disputed")

    def get_dispute_thread(self, actor: Actor, task_id: str) -> list[dict[str, Any]]:
        """The dispute chat seeded when the dispute was opened."""
        task = require_task(self._store, task_id)
        if not actor.is_admin and actor.user_id not in (
            task["employer_id"],
            task["accepted_student_id"],
        ):
            raise ServiceError("FORBIDDEN", "You are not a party to this task", 403, {})
        return self._store.list_chat_messages(task_id)
