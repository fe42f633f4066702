"""Task state machine: posting, editing, applications, acceptance, submission."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from task_escrow_service.logging import get_logger
from task_escrow_service.schemas import TRACKED_EDIT_FIELDS
from task_escrow_service.services.anomaly_sweep import record_anomaly
from task_escrow_service.services.gamification import hours_since
from task_escrow_service.services.guards import (
    conflict,
    forbidden,
    invalid_state,
    require_accepted_student,
    require_application,
    require_role,
    require_task,
    require_task_owner,
    validation_error,
)
from task_escrow_service.services.ledger_store import (
    DuplicateApplicationError,
    format_timestamp,
    parse_timestamp,
)

if TYPE_CHECKING:
    from task_escrow_service.config import RulesConfig
    from task_escrow_service.schemas import SubmissionReport, TaskDraft, TaskEdit
    from task_escrow_service.services.identity import Actor
    from task_escrow_service.services.ledger_store import LedgerStore
    from task_escrow_service.services.notifier import Notifier

_NON_NULLABLE_EDIT_FIELDS = frozenset({"title", "gold", "priority_level", "is_featured"})
_EDITABLE_STATUSES = ("posted", "in_progress")


class TaskLifecycle:
    """
    Governs task ``status`` and ``submission_status``.

    ``status`` moves posted -> in_progress -> completed | cancelled.
    ``submission_status`` moves pending -> submitted -> confirmed | rejected,
    rejected -> submitted (resubmission) or disputed, and disputed ->
    confirmed | rejected once arbitrated. Every transition is a conditional
    update on the state that was read, so concurrent callers cannot both win.
    Settlement transitions live in SettlementEngine and DisputeArbitrator.
    """

    def __init__(self, store: LedgerStore, notifier: Notifier, rules: RulesConfig) -> None:
        self._store = store
        self._notifier = notifier
        self._rules = rules

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> dict[str, Any]:
        """Fetch a task or raise TASK_NOT_FOUND."""
        return require_task(self._store, task_id)

    def list_tasks(
        self,
        *,
        status: str | None = None,
        employer_id: str | None = None,
        student_id: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters."""
        return self._store.list_tasks(
            status=status,
            employer_id=employer_id,
            student_id=student_id,
            limit=limit,
            offset=offset,
        )

    def list_task_applications(self, actor: Actor, task_id: str) -> list[dict[str, Any]]:
        """Applications on a task, visible to its employer and to admins."""
        task = require_task(self._store, task_id)
        if not actor.is_admin:
            require_task_owner(actor, task)
        return self._store.list_applications(task_id=task_id)

    def list_my_applications(self, actor: Actor) -> list[dict[str, Any]]:
        """Applications submitted by the calling student."""
        require_role(actor, "student")
        return self._store.list_applications(student_id=actor.user_id)

    # ------------------------------------------------------------------
    # Posting and editing
    # ------------------------------------------------------------------

    def post_task(self, actor: Actor, draft: TaskDraft) -> dict[str, Any]:
        """Create a task in ``posted`` state, honoring any posting restriction."""
        require_role(actor, "employer")
        now = datetime.now(UTC)
        timestamp = format_timestamp(now)
        task_id = f"t-{uuid.uuid4()}"

        with self._store.transaction():
            priority = self._effective_priority(actor.user_id, draft.priority_level, now)
            self._store.insert_task(
                {
                    "task_id": task_id,
                    "employer_id": actor.user_id,
                    "title": draft.title,
                    "location": draft.location,
                    "duration": draft.duration,
                    "description": draft.description,
                    "skills": draft.skills,
                    "tags": draft.tags,
                    "banner_url": draft.banner_url,
                    "is_featured": draft.is_featured,
                    "gold": draft.gold,
                    "priority_level": priority,
                    "deadline": draft.deadline,
                    "status": "posted",
                    "submission_status": "pending",
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
            )

        get_logger(__name__).info(
            "Task posted",
            extra={
                "task_id": task_id,
                "employer_id": actor.user_id,
                "gold": draft.gold,
                "priority_level": priority,
            },
        )
        return require_task(self._store, task_id)

    def edit_task(self, actor: Actor, task_id: str, edit: TaskEdit) -> dict[str, Any]:
        """
        Apply an allow-listed partial update.

        Editing a task that already has an accepted student never blocks,
        but when a tracked field actually changes one ``task_stalled``
        anomaly is opened listing every changed field, and the student and
        all admins are notified.
        """
        require_role(actor, "employer")
        changes = edit.changes()
        if len(changes) == 0:
            raise validation_error("Request contains no editable fields")
        for name in _NON_NULLABLE_EDIT_FIELDS & changes.keys():
            if changes[name] is None:
                raise validation_error(f"Field '{name}' must not be null", field=name)
        for name in ("skills", "tags"):
            if name in changes and changes[name] is None:
                changes[name] = []
        if isinstance(changes.get("title"), str):
            changes["title"] = str(changes["title"]).strip()
            if not changes["title"]:
                raise validation_error("title must not be blank", field="title")

        now = datetime.now(UTC)
        with self._store.transaction():
            task = require_task(self._store, task_id)
            require_task_owner(actor, task)
            if task["status"] not in _EDITABLE_STATUSES:
                raise invalid_state(
                    f"Task cannot be edited while {task['status']}", status=task["status"]
                )
            if (
                "gold" in changes
                and task["accepted_student_id"] is not None
                and changes["gold"] != task["gold"]
            ):
                raise invalid_state("Gold cannot change once a student has been accepted")

            if "priority_level" in changes:
                changes["priority_level"] = self._effective_priority(
                    actor.user_id, str(changes["priority_level"]), now
                )
            else:
                self._effective_priority(actor.user_id, str(task["priority_level"]), now)

            changed_fields = [
                name
                for name in TRACKED_EDIT_FIELDS
                if name in changes and changes[name] != task[name]
            ]
            updates = dict(changes)
            updates["updated_at"] = format_timestamp(now)
            updated = self._store.update_task(task_id, updates, expected_status=task["status"])
            if updated == 0:
                raise invalid_state("Task changed state while being edited")

            student_id = task["accepted_student_id"]
            if student_id is not None and changed_fields:
                self._report_mid_task_edit(task, student_id, changed_fields)

        get_logger(__name__).info(
            "Task edited",
            extra={"task_id": task_id, "fields": sorted(changes), "changed": changed_fields},
        )
        return require_task(self._store, task_id)

    def _report_mid_task_edit(
        self,
        task: dict[str, Any],
        student_id: str,
        changed_fields: list[str],
    ) -> None:
        fields_text = ", ".join(changed_fields)
        record_anomaly(
            self._store,
            anomaly_type="task_stalled",
            severity="high",
            description=(
                f"Task '{task['title']}' was edited after a student was accepted "
                f"(changed: {fields_text})"
            ),
            task_id=task["task_id"],
            user_id=task["employer_id"],
            employer_id=task["employer_id"],
            student_id=student_id,
            changed_fields=changed_fields,
        )
        self._notifier.notify(
            student_id,
            "task_edited",
            "Task details changed",
            f"The employer changed {fields_text} on '{task['title']}'.",
            related_task_id=task["task_id"],
            related_user_id=task["employer_id"],
            metadata={"changed_fields": changed_fields},
        )
        self._notifier.notify_admins(
            "task_edited_mid_work",
            "Task edited mid-work",
            f"Task '{task['title']}' was edited while in progress ({fields_text}).",
            related_task_id=task["task_id"],
            related_user_id=task["employer_id"],
            metadata={"changed_fields": changed_fields},
        )

    def _effective_priority(self, employer_id: str, requested: str, now: datetime) -> str:
        """
        Resolve the priority an employer may post with right now.

        Must run inside the caller's transaction: an expired restriction is
        cleared here, an active one downgrades anything above ``low``.
        """
        user = self._store.get_user(employer_id)
        if user is None or user["restriction_until"] is None:
            return requested

        if parse_timestamp(user["restriction_until"]) <= now:
            self._store.update_user(
                employer_id, {"restriction_until": None, "low_priority_only": False}
            )
            get_logger(__name__).info(
                "Posting restriction expired", extra={"employer_id": employer_id}
            )
            return requested

        if user["low_priority_only"] and requested != "low":
            get_logger(__name__).info(
                "Priority downgraded by posting restriction",
                extra={"employer_id": employer_id, "requested": requested},
            )
            return "low"
        return requested

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def apply(self, actor: Actor, task_id: str, message: str | None) -> dict[str, Any]:
        """A student applies to a posted task."""
        require_role(actor, "student")
        task = require_task(self._store, task_id)
        if task["status"] != "posted":
            raise invalid_state("Task is not open for applications", status=task["status"])

        timestamp = format_timestamp(datetime.now(UTC))
        application_id = f"app-{uuid.uuid4()}"
        with self._store.transaction():
            try:
                self._store.insert_application(
                    {
                        "application_id": application_id,
                        "task_id": task_id,
                        "student_id": actor.user_id,
                        "employer_id": task["employer_id"],
                        "status": "applied",
                        "message": message,
                        "created_at": timestamp,
                        "updated_at": timestamp,
                    }
                )
            except DuplicateApplicationError as exc:
                raise conflict(str(exc), task_id=task_id) from exc
            self._notifier.notify(
                task["employer_id"],
                "application_received",
                "New application",
                f"A student applied to '{task['title']}'.",
                related_task_id=task_id,
                related_user_id=actor.user_id,
            )

        get_logger(__name__).info(
            "Application submitted",
            extra={"application_id": application_id, "task_id": task_id},
        )
        application = self._store.get_application(application_id)
        if application is None:
            msg = f"Application {application_id} missing after insert"
            raise RuntimeError(msg)
        return application

    def mark_evaluating(self, actor: Actor, application_id: str) -> dict[str, Any]:
        """Employer moves an application from applied to evaluating."""
        application = self._owned_application(actor, application_id)
        updated = self._store.update_application(
            application_id,
            {"status": "evaluating", "updated_at": format_timestamp(datetime.now(UTC))},
            expected_status="applied",
        )
        if updated == 0:
            raise invalid_state(
                "Only applied applications can be moved to evaluating",
                status=application["status"],
            )
        return require_application(self._store, application_id)

    def reject_application(self, actor: Actor, application_id: str) -> dict[str, Any]:
        """Employer rejects an applied or evaluating application."""
        application = self._owned_application(actor, application_id)
        with self._store.transaction():
            updated = self._store.update_application(
                application_id,
                {"status": "rejected", "updated_at": format_timestamp(datetime.now(UTC))},
                expected_status=("applied", "evaluating"),
            )
            if updated == 0:
                raise invalid_state(
                    "Application is no longer open", status=application["status"]
                )
            self._notifier.notify(
                application["student_id"],
                "application_rejected",
                "Application not selected",
                "Your application was not selected.",
                related_task_id=application["task_id"],
            )
        return require_application(self._store, application_id)

    def accept_application(self, actor: Actor, application_id: str) -> dict[str, Any]:
        """
        Accept one application and start the task.

        The task moves posted -> in_progress with a single conditional update
        and every other open application on it is rejected in the same
        transaction. A concurrent second acceptance finds the task no longer
        posted and fails with INVALID_STATE.
        """
        application = self._owned_application(actor, application_id)
        task_id = application["task_id"]
        timestamp = format_timestamp(datetime.now(UTC))

        with self._store.transaction():
            started = self._store.update_task(
                task_id,
                {
                    "status": "in_progress",
                    "submission_status": "pending",
                    "accepted_student_id": application["student_id"],
                    "accepted_at": timestamp,
                    "updated_at": timestamp,
                },
                expected_status="posted",
            )
            if started == 0:
                raise invalid_state("Task is no longer open for acceptance", task_id=task_id)

            accepted = self._store.update_application(
                application_id,
                {"status": "accepted", "updated_at": timestamp},
                expected_status=("applied", "evaluating"),
            )
            if accepted == 0:
                raise invalid_state("Application is no longer open", application_id=application_id)

            siblings = self._store.list_applications(task_id=task_id)
            rejected = self._store.reject_sibling_applications(task_id, application_id, timestamp)

            task = require_task(self._store, task_id)
            self._notifier.notify(
                application["student_id"],
                "application_accepted",
                "You got the task",
                f"Your application for '{task['title']}' was accepted.",
                related_task_id=task_id,
                related_user_id=actor.user_id,
            )
            for sibling in siblings:
                if sibling["application_id"] != application_id and sibling["status"] in (
                    "applied",
                    "evaluating",
                ):
                    self._notifier.notify(
                        sibling["student_id"],
                        "application_rejected",
                        "Application not selected",
                        f"Another student was selected for '{task['title']}'.",
                        related_task_id=task_id,
                    )

        get_logger(__name__).info(
            "Application accepted",
            extra={
                "task_id": task_id,
                "application_id": application_id,
                "student_id": application["student_id"],
                "siblings_rejected": rejected,
            },
        )
        return require_task(self._store, task_id)

    def _owned_application(self, actor: Actor, application_id: str) -> dict[str, Any]:
        require_role(actor, "employer")
        application = require_application(self._store, application_id)
        if application["employer_id"] != actor.user_id:
            raise forbidden("Only the employer who posted this task can manage its applications")
        return application

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    def complete_task(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Direct completion by the accepted student or the owner employer."""
        task = require_task(self._store, task_id)
        is_student = task["accepted_student_id"] == actor.user_id
        is_employer = task["employer_id"] == actor.user_id
        if not (is_student or is_employer):
            raise forbidden("Only the task's employer or accepted student can complete it")

        timestamp = format_timestamp(datetime.now(UTC))
        with self._store.transaction():
            updated = self._store.update_task(
                task_id,
                {"status": "completed", "completed_at": timestamp, "updated_at": timestamp},
                expected_status="in_progress",
            )
            if updated == 0:
                raise invalid_state(
                    "Only in-progress tasks can be completed", status=task["status"]
                )
            other_party = task["employer_id"] if is_student else task["accepted_student_id"]
            self._notifier.notify(
                other_party,
                "task_completed",
                "Task completed",
                f"'{task['title']}' was marked as completed.",
                related_task_id=task_id,
                related_user_id=actor.user_id,
            )

        get_logger(__name__).info(
            "Task completed", extra={"task_id": task_id, "completed_by": actor.user_id}
        )
        return require_task(self._store, task_id)

    def submit_work(self, actor: Actor, task_id: str, report: SubmissionReport) -> dict[str, Any]:
        """
        The accepted student submits their work, once.

        When no time is reported it defaults to the hours since acceptance.
        """
        task = require_task(self._store, task_id)
        require_accepted_student(actor, task)
        if task["status"] != "in_progress":
            raise invalid_state("Work can only be submitted on in-progress tasks")

        now = datetime.now(UTC)
        time_taken = report.time_taken_hours
        if time_taken is None and task["accepted_at"] is not None:
            time_taken = hours_since(task["accepted_at"], now)
        timestamp = format_timestamp(now)

        with self._store.transaction():
            updated = self._store.update_task(
                task_id,
                {
                    "submission_status": "submitted",
                    "submission_proof_url": report.proof_url,
                    "time_taken_hours": time_taken,
                    "completion_notes": report.notes,
                    "submitted_at": timestamp,
                    "updated_at": timestamp,
                },
                expected_status="in_progress",
                expected_submission_status="pending",
            )
            if updated == 0:
                raise invalid_state(
                    "Work can only be submitted once, while the submission is pending",
                    submission_status=task["submission_status"],
                )
            self._notifier.notify(
                task["employer_id"],
                "work_submitted",
                "Work submitted",
                f"The student submitted work for '{task['title']}'.",
                related_task_id=task_id,
                related_user_id=actor.user_id,
            )

        get_logger(__name__).info(
            "Work submitted",
            extra={"task_id": task_id, "student_id": actor.user_id, "time_taken": time_taken},
        )
        return require_task(self._store, task_id)

    def reject_submission(self, actor: Actor, task_id: str, reason: str) -> dict[str, Any]:
        """The employer rejects a submission with a mandatory reason."""
        task = require_task(self._store, task_id)
        require_task_owner(actor, task)
        reason = reason.strip()
        if len(reason) < self._rules.min_reason_length:
            raise validation_error(
                f"Rejection reason must be at least {self._rules.min_reason_length} characters",
                field="reason",
            )

        timestamp = format_timestamp(datetime.now(UTC))
        with self._store.transaction():
            updated = self._store.update_task(
                task_id,
                {
                    "submission_status": "rejected",
                    "rejection_reason": reason,
                    "updated_at": timestamp,
                },
                expected_submission_status="submitted",
            )
            if updated == 0:
                raise invalid_state(
                    "Only submitted work can be rejected",
                    submission_status=task["submission_status"],
                )
            student_id = task["accepted_student_id"]
            if student_id is not None:
                self._notifier.notify(
                    student_id,
                    "submission_rejected",
                    "Submission rejected",
                    f"Your submission for '{task['title']}' was rejected: {reason}",
                    related_task_id=task_id,
                    related_user_id=actor.user_id,
                )

        get_logger(__name__).info("Submission rejected", extra={"task_id": task_id})
        return require_task(self._store, task_id)

