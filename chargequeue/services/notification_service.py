# chargequeue/services/notification_service.py
"""
Notification gateway: fire-and-forget delivery of requester events.

Delivery goes to the WhatsApp Cloud API as a plain text message.
notify() never awaits delivery and never raises: the queue and session
state transitions that call it must not depend on the messaging channel.
"""

import asyncio
import json
from typing import Optional, Set

import httpx

from chargequeue.config import settings as default_settings
from chargequeue.services.events import NotificationEvent
from chargequeue.utils.logger import get_logger

logger = get_logger(__name__)


class NotificationGateway:
    def __init__(self, config=None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or default_settings
        self._client = client
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.config.NOTIFICATIONS_ENABLED and self.config.WHATSAPP_TOKEN
                    and self.config.WHATSAPP_PHONE_NUMBER_ID)

    def notify(self, requester_id: str, event: NotificationEvent) -> None:
        """Schedule delivery and return immediately."""
        try:
            task = asyncio.get_running_loop().create_task(self._safe_deliver(requester_id, event))
        except RuntimeError:
            logger.warning(f"[NOTIFY] No running loop, dropped {event.event_type} for {requester_id}")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _safe_deliver(self, requester_id: str, event: NotificationEvent):
        try:
            await self.deliver(requester_id, event)
        except Exception as e:
            logger.warning(f"[NOTIFY] {event.event_type} to {requester_id} failed: {e}")

    async def deliver(self, requester_id: str, event: NotificationEvent):
        if not self.enabled:
            logger.debug(f"[NOTIFY] (disabled) {requester_id} ← {event.payload()}")
            return

        url = f"{self.config.WHATSAPP_API_URL}/{self.config.WHATSAPP_PHONE_NUMBER_ID}/messages"
        body = {
            "messaging_product": "whatsapp",
            "to": requester_id,
            "type": "text",
            "text": {"body": event.summary()},
            # echoed back on delivery-status webhooks
            "biz_opaque_callback_data": json.dumps(event.payload()),
        }
        headers = {"Authorization": f"Bearer {self.config.WHATSAPP_TOKEN}"}

        if self._client is not None:
            response = await self._client.post(url, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.config.NOTIFICATION_TIMEOUT_SECONDS) as client:
                response = await client.post(url, json=body, headers=headers)

        if response.status_code >= 400:
            logger.warning(f"[NOTIFY] {event.event_type} to {requester_id} → HTTP {response.status_code}")
            return
        logger.info(f"[NOTIFY] {event.event_type} → {requester_id}")

    async def drain(self):
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)
