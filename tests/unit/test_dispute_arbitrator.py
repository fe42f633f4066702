"""Unit tests for dispute opening and arbitration."""

from __future__ import annotations

import pytest

from task_escrow_service.core.exceptions import ServiceError
from tests.helpers import ADMIN, EMPLOYER, OTHER_STUDENT, STUDENT, Marketplace


def _disputed(market: Marketplace, gold: int = 400) -> dict:
    """A rejected task whose student can afford and has opened a dispute."""
    task = market.rejected(gold)
    market.store.credit_gold(STUDENT.user_id, gold // 2)
    return market.disputes.open_dispute(STUDENT, task["task_id"])


@pytest.mark.unit
class TestOpenDispute:
    """Opening a dispute holds ceil(gold * 0.5) from the student."""

    def test_opening_holds_escrow(self, market: Marketplace) -> None:
        task = market.rejected(400)
        market.store.credit_gold(STUDENT.user_id, 250)

        disputed = market.disputes.open_dispute(STUDENT, task["task_id"])

        assert disputed["submission_status"] == "disputed"
        assert disputed["dispute_escrow_amount"] == 200
        assert disputed["dispute_chat_id"].startswith("dsp-")
        assert market.balance(STUDENT.user_id) == 50
        held = market.store.list_payments(task_id=task["task_id"], payment_type="penalty")
        assert [(p["amount"], p["status"]) for p in held] == [(200, "disputed")]

    def test_insufficient_funds_changes_nothing(self, market: Marketplace) -> None:
        task = market.rejected(400)
        market.store.credit_gold(STUDENT.user_id, 199)

        with pytest.raises(ServiceError) as exc_info:
            market.disputes.open_dispute(STUDENT, task["task_id"])

        assert exc_info.value.error == "INSUFFICIENT_FUNDS"
        assert exc_info.value.status_code == 402
        assert exc_info.value.details == {"required": 200}
        assert market.balance(STUDENT.user_id) == 199
        unchanged = market.store.get_task(task["task_id"])
        assert unchanged is not None
        assert unchanged["submission_status"] == "rejected"
        assert market.store.list_anomalies() == []

    def test_only_rejected_work_can_be_disputed(self, market: Marketplace) -> None:
        task = market.start(400)
        market.submit(task["task_id"])
        market.store.credit_gold(STUDENT.user_id, 500)
        with pytest.raises(ServiceError) as exc_info:
            market.disputes.open_dispute(STUDENT, task["task_id"])
        assert exc_info.value.error == "INVALID_STATE"
        assert market.balance(STUDENT.user_id) == 500

    def test_only_accepted_student_disputes(self, market: Marketplace) -> None:
        task = market.rejected(400)
        market.store.credit_gold(OTHER_STUDENT.user_id, 500)
        with pytest.raises(ServiceError) as exc_info:
            market.disputes.open_dispute(OTHER_STUDENT, task["task_id"])
        assert exc_info.value.error == "FORBIDDEN"

    def test_dispute_opens_anomaly_and_thread(self, market: Marketplace) -> None:
        disputed = _disputed(market)

        anomalies = market.store.list_anomalies(anomaly_type="disputed_rejection")
        assert len(anomalies) == 1
        assert anomalies[0]["severity"] == "medium"
        assert anomalies[0]["task_id"] == disputed["task_id"]

        thread = market.disputes.get_dispute_thread(EMPLOYER, disputed["task_id"])
        assert len(thread) == 1
        assert thread[0]["sender_id"] == STUDENT.user_id

        admin_types = [n["type"] for n in market.store.list_notifications(ADMIN.user_id)]
        assert "dispute_opened" in admin_types

    def test_weak_rejection_reason_raises_severity(self, market: Marketplace) -> None:
        task = market.rejected(400)
        market.store.update_task(task["task_id"], {"rejection_reason": "meh"})
        market.store.credit_gold(STUDENT.user_id, 200)

        market.disputes.open_dispute(STUDENT, task["task_id"])

        anomalies = market.store.list_anomalies(anomaly_type="disputed_rejection")
        assert anomalies[0]["severity"] == "high"

    def test_outsider_cannot_read_thread(self, market: Marketplace) -> None:
        disputed = _disputed(market)
        with pytest.raises(ServiceError) as exc_info:
            market.disputes.get_dispute_thread(OTHER_STUDENT, disputed["task_id"])
        assert exc_info.value.error == "FORBIDDEN"


@pytest.mark.unit
class TestResolveDispute:
    """Admin rulings in both directions."""

    def test_student_win_pays_gold_escrow_and_penalty(self, market: Marketplace) -> None:
        disputed = _disputed(market, 400)

        result = market.disputes.resolve_dispute(ADMIN, disputed["task_id"], "student", None)

        assert result["payout"] == 800
        assert result["task"]["status"] == "completed"
        assert result["task"]["submission_status"] == "confirmed"
        assert market.balance(STUDENT.user_id) == 800

        payment = market.store.get_active_task_payment(disputed["task_id"])
        assert payment is not None
        assert payment["status"] == "released"
        assert payment["credited_amount"] == 800

        student = market.store.get_user(STUDENT.user_id)
        assert student is not None
        assert student["total_tasks_completed"] == 1

    def test_student_win_restricts_employer(self, market: Marketplace) -> None:
        disputed = _disputed(market)
        result = market.disputes.resolve_dispute(ADMIN, disputed["task_id"], "student", None)

        employer = market.store.get_user(EMPLOYER.user_id)
        assert employer is not None
        assert employer["low_priority_only"] is True
        assert employer["restriction_until"] == result["employer_restricted_until"]

        task = market.post(100, priority_level="high")
        assert task["priority_level"] == "low"

    def test_employer_win_forfeits_escrow(self, market: Marketplace) -> None:
        disputed = _disputed(market, 400)

        result = market.disputes.resolve_dispute(
            ADMIN, disputed["task_id"], "employer", "Proof never matched the brief"
        )

        assert result["payout"] == 0
        assert result["forfeited_escrow"] == 200
        assert result["task"]["submission_status"] == "rejected"
        assert result["task"]["rejection_reason"] == "Proof never matched the brief"
        assert market.balance(STUDENT.user_id) == 0
        penalties = market.store.list_payments(task_id=disputed["task_id"], payment_type="penalty")
        assert [p["status"] for p in penalties] == ["released"]

    def test_employer_win_keeps_original_reason(self, market: Marketplace) -> None:
        disputed = _disputed(market)
        result = market.disputes.resolve_dispute(ADMIN, disputed["task_id"], "employer", None)
        assert result["task"]["rejection_reason"] == disputed["rejection_reason"]

    def test_upheld_rejection_is_final(self, market: Marketplace) -> None:
        disputed = _disputed(market, 400)
        market.disputes.resolve_dispute(ADMIN, disputed["task_id"], "employer", None)
        market.store.credit_gold(STUDENT.user_id, 500)

        with pytest.raises(ServiceError) as exc_info:
            market.submit(disputed["task_id"])
        assert exc_info.value.error == "INVALID_STATE"

        with pytest.raises(ServiceError) as exc_info:
            market.disputes.open_dispute(STUDENT, disputed["task_id"])
        assert exc_info.value.error == "INVALID_STATE"

        assert market.balance(STUDENT.user_id) == 500
        penalties = market.store.list_payments(task_id=disputed["task_id"], payment_type="penalty")
        assert len(penalties) == 1

    def test_resolution_closes_task_anomalies(self, market: Marketplace) -> None:
        disputed = _disputed(market)
        market.disputes.resolve_dispute(ADMIN, disputed["task_id"], "student", "Work was fine")

        anomalies = market.store.list_anomalies(task_id=disputed["task_id"])
        assert anomalies
        assert {a["status"] for a in anomalies} == {"resolved"}
        assert anomalies[0]["resolved_by"] == ADMIN.user_id

    def test_both_parties_are_notified(self, market: Marketplace) -> None:
        disputed = _disputed(market)
        market.disputes.resolve_dispute(ADMIN, disputed["task_id"], "employer", None)
        for party in (STUDENT, EMPLOYER):
            types = [n["type"] for n in market.store.list_notifications(party.user_id)]
            assert "dispute_resolved" in types

    def test_resolving_twice_is_invalid(self, market: Marketplace) -> None:
        disputed = _disputed(market)
        market.disputes.resolve_dispute(ADMIN, disputed["task_id"], "student", None)
        with pytest.raises(ServiceError) as exc_info:
            market.disputes.resolve_dispute(ADMIN, disputed["task_id"], "student", None)
        assert exc_info.value.error == "INVALID_STATE"
        assert market.balance(STUDENT.user_id) == 800

    def test_only_admin_resolves(self, market: Marketplace) -> None:
        disputed = _disputed(market)
        with pytest.raises(ServiceError) as exc_info:
            market.disputes.resolve_dispute(EMPLOYER, disputed["task_id"], "employer", None)
        assert exc_info.value.error == "FORBIDDEN"

    def test_unknown_winner_is_rejected(self, market: Marketplace) -> None:
        disputed = _disputed(market)
        with pytest.raises(ServiceError) as exc_info:
            market.disputes.resolve_dispute(ADMIN, disputed["task_id"], "nobody", None)
        assert exc_info.value.error == "VALIDATION_ERROR"

    def test_list_disputes_is_admin_only(self, market: Marketplace) -> None:
        disputed = _disputed(market)
        assert [t["task_id"] for t in market.disputes.list_disputes(ADMIN)] == [
            disputed["task_id"]
        ]
        with pytest.raises(ServiceError):
            market.disputes.list_disputes(STUDENT)
