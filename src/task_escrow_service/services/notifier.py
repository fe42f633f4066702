"""Fire-and-forget notification sink adapter."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from task_escrow_service.logging import get_logger
from task_escrow_service.services.ledger_store import now_iso

if TYPE_CHECKING:
    from task_escrow_service.clients.notification_client import NotificationClient
    from task_escrow_service.services.ledger_store import LedgerStore


class Notifier:
    """
    Records notifications in the outbox and forwards them to the webhook.

    ``notify`` may be called inside a ledger transaction: dispatch is
    deferred until that transaction commits, and a rolled-back operation
    sends nothing. Dispatch failures are logged and swallowed so they can
    never undo the ledger change that triggered them.
    """

    def __init__(self, store: LedgerStore, client: NotificationClient | None) -> None:
        self._store = store
        self._client = client

    def notify(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        related_task_id: str | None = None,
        related_user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Queue one notification for delivery after the current transaction."""
        record = {
            "notification_id": f"ntf-{uuid.uuid4()}",
            "user_id": user_id,
            "type": notification_type,
            "title": title,
            "message": message,
            "related_task_id": related_task_id,
            "related_user_id": related_user_id,
            "metadata": metadata,
            "created_at": now_iso(),
        }
        self._store.after_commit(lambda: self._dispatch(record))

    def notify_admins(
        self,
        notification_type: str,
        title: str,
        message: str,
        related_task_id: str | None = None,
        related_user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Notify every admin. Returns the number of admins addressed."""
        admins = self._store.list_users(role="admin")
        for admin in admins:
            self.notify(
                admin["user_id"],
                notification_type,
                title,
                message,
                related_task_id=related_task_id,
                related_user_id=related_user_id,
                metadata=metadata,
            )
        return len(admins)

    def _dispatch(self, record: dict[str, Any]) -> None:
        logger = get_logger(__name__)
        try:
            self._store.insert_notification(record)
        except Exception:
            logger.exception(
                "Failed to store notification",
                extra={"notification_id": record["notification_id"], "type": record["type"]},
            )
            return

        if self._client is None:
            return

        try:
            self._client.deliver(record)
        except Exception:
            logger.exception(
                "Failed to deliver notification",
                extra={"notification_id": record["notification_id"], "type": record["type"]},
            )
