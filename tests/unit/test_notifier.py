"""Unit tests for the notification outbox and webhook client."""

from __future__ import annotations

import json

import httpx
import pytest

from task_escrow_service.clients.notification_client import NotificationClient
from task_escrow_service.services.ledger_store import LedgerStore
from task_escrow_service.services.notifier import Notifier

WEBHOOK_URL = "https://hooks.example/notify"


def _recording_client(received: list[dict], status_code: int = 202) -> NotificationClient:
    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(status_code)

    return NotificationClient(WEBHOOK_URL, 5, transport=httpx.MockTransport(handler))


@pytest.mark.unit
class TestOutbox:
    """Notifications are stored only once their transaction commits."""

    def test_notification_waits_for_commit(self, store: LedgerStore) -> None:
        notifier = Notifier(store, None)
        store.ensure_user("u-1", "student")

        with store.transaction():
            notifier.notify("u-1", "task_posted", "Hello", "A task was posted")
            assert store.list_notifications("u-1") == []

        stored = store.list_notifications("u-1")
        assert len(stored) == 1
        assert stored[0]["type"] == "task_posted"
        assert stored[0]["notification_id"].startswith("ntf-")

    def test_rolled_back_operation_sends_nothing(self, store: LedgerStore) -> None:
        received: list[dict] = []
        notifier = Notifier(store, _recording_client(received))

        with pytest.raises(RuntimeError), store.transaction():
            notifier.notify("u-1", "task_posted", "Hello", "A task was posted")
            raise RuntimeError("boom")

        assert store.list_notifications("u-1") == []
        assert received == []

    def test_notify_outside_transaction_is_immediate(self, store: LedgerStore) -> None:
        notifier = Notifier(store, None)
        notifier.notify("u-1", "task_posted", "Hello", "Now", metadata={"gold": 5})
        stored = store.list_notifications("u-1")
        assert stored[0]["metadata"] == {"gold": 5}

    def test_notify_admins_addresses_every_admin(self, store: LedgerStore) -> None:
        notifier = Notifier(store, None)
        for user_id in ("u-admin-1", "u-admin-2"):
            store.ensure_user(user_id, "admin")
        store.ensure_user("u-student", "student")

        count = notifier.notify_admins("dispute_opened", "Dispute", "A dispute was opened")

        assert count == 2
        assert len(store.list_notifications("u-admin-1")) == 1
        assert store.list_notifications("u-student") == []


@pytest.mark.unit
class TestWebhookDelivery:
    """Webhook delivery is best effort."""

    def test_committed_notification_is_posted(self, store: LedgerStore) -> None:
        received: list[dict] = []
        notifier = Notifier(store, _recording_client(received))

        with store.transaction():
            notifier.notify("u-1", "payment_released", "Paid", "Gold credited")

        assert [r["type"] for r in received] == ["payment_released"]
        assert received[0]["user_id"] == "u-1"

    def test_transport_failure_is_swallowed(self, store: LedgerStore) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = NotificationClient(WEBHOOK_URL, 5, transport=httpx.MockTransport(handler))
        notifier = Notifier(store, client)

        notifier.notify("u-1", "payment_released", "Paid", "Gold credited")

        assert len(store.list_notifications("u-1")) == 1

    def test_client_reports_rejection(self) -> None:
        received: list[dict] = []
        client = _recording_client(received, status_code=500)
        assert client.deliver({"notification_id": "ntf-1"}) is False
        assert received == [{"notification_id": "ntf-1"}]
        client.close()

    def test_client_reports_success(self) -> None:
        client = _recording_client([])
        assert client.deliver({"notification_id": "ntf-1"}) is True
        client.close()
