"""HTTP client for the external notification webhook."""

from __future__ import annotations

from typing import Any

import httpx

from task_escrow_service.logging import get_logger


class NotificationClient:
    """
    Delivers notification records to a webhook with a JSON POST.

    Delivery is best effort: transport failures and non-2xx answers are
    logged and reported as ``False``, never raised.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: int,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._client = httpx.Client(timeout=httpx.Timeout(timeout_seconds), transport=transport)

    def deliver(self, notification: dict[str, Any]) -> bool:
        """POST one notification record. Returns whether the sink accepted it."""
        logger = get_logger(__name__)

        try:
            response = self._client.post(self._webhook_url, json=notification)
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification webhook request failed",
                extra={
                    "error": str(exc),
                    "notification_id": notification.get("notification_id"),
                },
            )
            return False

        if response.is_success:
            return True

        logger.warning(
            "Notification webhook rejected delivery",
            extra={
                "status_code": response.status_code,
                "notification_id": notification.get("notification_id"),
            },
        )
        return False

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()
