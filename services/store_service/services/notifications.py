"""
Order notification client.

Sends templated order e-mails through the Communications Service's email API,
authenticated with a short-lived service-role JWT. Delivery is fire and
forget: failures are logged and reported as ``False``, never raised.

Usage:
    notifier = get_notifier()
    await notifier.send("order_confirmation", order.id, to_email=email)
"""

import uuid
from typing import Any, Optional

import httpx
from libs.auth.dependencies import _service_role_jwt
from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)

ORDER_CONFIRMATION = "order_confirmation"


class NotificationClient:
    """HTTP client for order notifications."""

    def __init__(self, base_url: Optional[str] = None, timeout: float = 10.0):
        self.base_url = (base_url or get_settings().COMMUNICATIONS_SERVICE_URL).rstrip(
            "/"
        )
        self.timeout = timeout

    def _get_auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {_service_role_jwt('store')}"}

    async def send(
        self,
        kind: str,
        order_id: uuid.UUID,
        *,
        to_email: Optional[str] = None,
        template_data: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Dispatch one notification.

        Args:
            kind: Template type, e.g. ``order_confirmation``
            order_id: Order the notification is about
            to_email: Recipient; without one the notification is skipped
            template_data: Extra values for the template

        Returns:
            True if the Communications Service accepted it, False otherwise
        """
        if not to_email:
            logger.info("No recipient for %s on order %s; skipping", kind, order_id)
            return False

        payload = {
            "template_type": kind,
            "to_email": to_email,
            "template_data": {"order_id": str(order_id), **(template_data or {})},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/email/template",
                    json=payload,
                    headers=self._get_auth_headers(),
                )
        except httpx.HTTPError as e:
            logger.error("Failed to reach Communications Service for %s: %s", kind, e)
            return False

        if response.status_code >= 400:
            logger.error(
                "Notification %s for order %s returned %s",
                kind,
                order_id,
                response.status_code,
            )
            return False
        logger.info("Sent %s for order %s", kind, order_id)
        return True


_notifier: Optional[NotificationClient] = None


def get_notifier() -> NotificationClient:
    """Get the singleton notification client."""
    global _notifier
    if _notifier is None:
        _notifier = NotificationClient()
    return _notifier


def set_notifier(notifier: Optional[NotificationClient]) -> None:
    """Swap the notifier (tests); ``None`` restores the default on next use."""
    global _notifier
    _notifier = notifier
