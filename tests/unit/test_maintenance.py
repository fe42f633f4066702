"""Unit tests for administrative deletes and cleanup."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.services.ledger_store import format_timestamp
from tests.helpers import ADMIN, EMPLOYER, OTHER_EMPLOYER, STUDENT, Marketplace


def _days_ago(days: int) -> str:
    return format_timestamp(datetime.now(UTC) - timedelta(days=days))


@pytest.mark.unit
class TestDeleteTask:
    """Task deletion cascades through everything attached to it."""

    def test_cascade_removes_dependents(self, market: Marketplace) -> None:
        task = market.confirmed(300)

        report = market.maintenance.delete_task(ADMIN, task["task_id"])

        assert report == {
            "task_id": task["task_id"],
            "deleted": True,
            "applications_deleted": 1,
            "payments_deleted": 1,
            "chat_messages_deleted": 0,
            "anomalies_deleted": 0,
            "tasks_deleted": 1,
        }
        assert market.store.get_task(task["task_id"]) is None
        assert market.store.list_payments(task_id=task["task_id"]) == []

    def test_balances_are_untouched(self, market: Marketplace) -> None:
        task = market.confirmed(300)
        market.maintenance.delete_task(ADMIN, task["task_id"])
        assert market.balance(STUDENT.user_id) == 300

    def test_only_admin_deletes(self, market: Marketplace) -> None:
        task = market.post(100)
        with pytest.raises(ServiceError) as exc_info:
            market.maintenance.delete_task(EMPLOYER, task["task_id"])
        assert exc_info.value.error == "FORBIDDEN"
        assert market.store.get_task(task["task_id"]) is not None

    def test_unknown_task_is_not_found(self, market: Marketplace) -> None:
        with pytest.raises(ServiceError) as exc_info:
            market.maintenance.delete_task(ADMIN, "t-missing")
        assert exc_info.value.error == "TASK_NOT_FOUND"


@pytest.mark.unit
class TestDeleteUser:
    """User deletion, per role."""

    def test_employer_takes_their_tasks(self, market: Marketplace) -> None:
        market.post(100)
        market.start(200)
        kept = market.post(100, employer=OTHER_EMPLOYER)

        report = market.maintenance.delete_user(ADMIN, EMPLOYER.user_id)

        assert report["role"] == "employer"
        assert report["tasks_deleted"] == 2
        assert market.store.get_user(EMPLOYER.user_id) is None
        assert [t["task_id"] for t in market.store.list_tasks()] == [kept["task_id"]]

    def test_student_task_is_reopened(self, market: Marketplace) -> None:
        held = market.start(200)
        done = market.confirmed(100)

        report = market.maintenance.delete_user(ADMIN, STUDENT.user_id)

        assert report["tasks_reopened"] == 1
        assert report["applications_deleted"] == 2
        reopened = market.store.get_task(held["task_id"])
        assert reopened is not None
        assert reopened["status"] == "posted"
        assert reopened["accepted_student_id"] is None
        assert reopened["accepted_at"] is None
        finished = market.store.get_task(done["task_id"])
        assert finished is not None
        assert finished["status"] == "completed"
        assert market.store.get_user(STUDENT.user_id) is None

    def test_student_anomalies_and_messages_go_too(self, market: Marketplace) -> None:
        task = market.rejected(400)
        market.store.credit_gold(STUDENT.user_id, 200)
        market.disputes.open_dispute(STUDENT, task["task_id"])

        report = market.maintenance.delete_user(ADMIN, STUDENT.user_id)

        assert report["chat_messages_deleted"] == 1
        assert report["anomalies_deleted"] == 1
        assert market.store.list_anomalies() == []

    def test_admin_cannot_be_deleted(self, market: Marketplace) -> None:
        with pytest.raises(ServiceError) as exc_info:
            market.maintenance.delete_user(ADMIN, ADMIN.user_id)
        assert exc_info.value.error == "FORBIDDEN"
        assert market.store.get_user(ADMIN.user_id) is not None

    def test_unknown_user_is_not_found(self, market: Marketplace) -> None:
        with pytest.raises(ServiceError) as exc_info:
            market.maintenance.delete_user(ADMIN, "u-nobody")
        assert exc_info.value.error == "USER_NOT_FOUND"


@pytest.mark.unit
class TestCleanup:
    """Cleanup cancels disputed and stale tasks and refunds their escrow."""

    def test_nothing_to_clean(self, market: Marketplace) -> None:
        market.start(100)
        market.confirmed(100)

        report = market.maintenance.cleanup(ADMIN)

        assert report["disputed_tasks_resolved"] == 0
        assert report["stale_tasks_cancelled"] == 0
        assert report["payments_refunded"] == 0

    def test_disputed_task_is_closed_and_escrow_returned(self, market: Marketplace) -> None:
        task = market.rejected(400)
        market.store.credit_gold(STUDENT.user_id, 200)
        market.disputes.open_dispute(STUDENT, task["task_id"])

        report = market.maintenance.cleanup(ADMIN)

        assert report["disputed_tasks_resolved"] == 1
        assert report["gold_returned_to_students"] == 200
        assert report["anomalies_resolved"] == 1
        assert report["chat_messages_deleted"] == 1
        assert market.balance(STUDENT.user_id) == 200
        cancelled = market.store.get_task(task["task_id"])
        assert cancelled is not None
        assert cancelled["status"] == "cancelled"
        penalties = market.store.list_payments(task_id=task["task_id"], payment_type="penalty")
        assert [p["status"] for p in penalties] == ["refunded"]

    def test_stale_submission_is_cancelled(self, market: Marketplace) -> None:
        task = market.start(100)
        escrow = market.settlement.fund_escrow(EMPLOYER, task["task_id"])
        market.submit(task["task_id"])
        market.store.update_task(task["task_id"], {"updated_at": _days_ago(31)})

        report = market.maintenance.cleanup(ADMIN)

        assert report["stale_tasks_cancelled"] == 1
        assert report["payments_refunded"] == 1
        assert report["gold_refunded_to_employers"] == 100
        assert report["applications_deleted"] == 1
        payment = market.store.get_payment(escrow["payment_id"])
        assert payment is not None
        assert payment["status"] == "refunded"
        for party in (EMPLOYER, STUDENT):
            types = [n["type"] for n in market.store.list_notifications(party.user_id)]
            assert "task_cancelled" in types

    def test_stale_in_progress_task_is_cancelled(self, market: Marketplace) -> None:
        stale = market.start(100)
        fresh = market.start(100)
        market.store.update_task(stale["task_id"], {"accepted_at": _days_ago(61)})

        report = market.maintenance.cleanup(ADMIN)

        assert report["stale_tasks_cancelled"] == 1
        statuses = {
            task_id: market.store.get_task(task_id)["status"]
            for task_id in (stale["task_id"], fresh["task_id"])
        }
        assert statuses == {stale["task_id"]: "cancelled", fresh["task_id"]: "in_progress"}

    def test_cleanup_accepts_explicit_clock(self, market: Marketplace) -> None:
        market.start(100)
        later = datetime.now(UTC) + timedelta(days=61)

        report = market.maintenance.cleanup(ADMIN, now=later)

        assert report["stale_tasks_cancelled"] == 1
        assert report["cleaned_at"] == format_timestamp(later)

    def test_cleanup_is_admin_only(self, market: Marketplace) -> None:
        with pytest.raises(ServiceError) as exc_info:
            market.maintenance.cleanup(EMPLOYER)
        assert exc_info.value.error == "FORBIDDEN"
