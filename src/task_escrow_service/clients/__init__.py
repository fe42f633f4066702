"""External service clients."""

from task_escrow_service.clients.notification_client import NotificationClient

__all__ = ["NotificationClient"]
