"""
Boost notifications.

Delivery is fire-and-forget: callers schedule a notification after their
transaction commits and never wait for it. Delivery failures are logged and
never propagate back into queue state.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Set

import aiohttp

from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class BoostEvent(str, Enum):
    CREATED = "boost.created"
    QUEUED = "boost.queued"
    ACTIVATED = "boost.activated"
    EXPIRED = "boost.expired"
    CANCELED = "boost.canceled"


EVENT_TITLES = {
    BoostEvent.CREATED: "Boost Purchased",
    BoostEvent.QUEUED: "Boost Queued",
    BoostEvent.ACTIVATED: "Boost Activated",
    BoostEvent.EXPIRED: "Boost Expired",
    BoostEvent.CANCELED: "Boost Canceled",
}


def entry_payload(entry, category_name: str, **extra) -> dict:
    """JSON-safe payload describing a queue entry."""
    payload = {
        "business_id": str(entry.business_id),
        "business_name": entry.business_name,
        "subscription_id": str(entry.subscription_id),
        "category_name": category_name,
        "status": entry.status.value if hasattr(entry.status, "value") else entry.status,
        "position": entry.position,
        "boost_start_time": entry.boost_start_time.isoformat() if entry.boost_start_time else None,
        "boost_end_time": entry.boost_end_time.isoformat() if entry.boost_end_time else None,
        "estimated_start_time": entry.estimated_start_time.isoformat() if entry.estimated_start_time else None,
        "amount": str(entry.amount_paid) if entry.amount_paid is not None else None,
        "currency": entry.currency,
    }
    payload.update({key: str(value) if value is not None and not isinstance(value, (int, float, bool, str)) else value for key, value in extra.items()})
    return payload


def build_message(event: BoostEvent, payload: dict) -> str:
    name = payload.get("business_name", "Your business")
    category = payload.get("category_name", "its category")
    if event == BoostEvent.QUEUED:
        return f"{name} is number {payload.get('position')} in the {category} boost queue."
    if event == BoostEvent.ACTIVATED:
        return f"{name} is now boosted in {category} until {payload.get('boost_end_time')}."
    if event == BoostEvent.EXPIRED:
        return f"The boost for {name} in {category} has expired. You can purchase a new boost anytime."
    if event == BoostEvent.CANCELED:
        refund = payload.get("refund_amount")
        return f"The boost for {name} in {category} was canceled. Refund: {refund or 0} {payload.get('currency', '')}".strip()
    return f"Boost purchased for {name} in {category}."


class NotificationDispatcher(ABC):
    """
    ``notify`` performs one delivery. ``dispatch`` schedules it in the
    background and is what services call.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @abstractmethod
    async def notify(self, recipient: str, event: BoostEvent, payload: dict) -> None:
        pass

    async def _deliver(self, recipient: str, event: BoostEvent, payload: dict) -> None:
        try:
            await self.notify(recipient, event, payload)
        except Exception as e:
            logger.error(f"Failed to deliver {event.value} notification to {recipient}: {e}")

    def dispatch(self, recipient, event: BoostEvent, payload: dict) -> Optional[asyncio.Task]:
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(str(recipient), BoostEvent(event), payload))
        except RuntimeError:
            logger.warning(f"No running event loop; dropped {event} notification for {recipient}")
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Waits for notifications still in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()


class LoggingDispatcher(NotificationDispatcher):
    async def notify(self, recipient: str, event: BoostEvent, payload: dict) -> None:
        logger.info(f"[{event.value}] to {recipient}: {EVENT_TITLES[event]} - {build_message(event, payload)}")


class WebhookDispatcher(NotificationDispatcher):
    """
    POSTs each notification as JSON to a single webhook endpoint.
    """

    def __init__(self, url: str, timeout: float = 10.0):
        super().__init__()
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _body(self, recipient: str, event: BoostEvent, payload: dict) -> dict:
        return {
            "event": event.value,
            "recipient": recipient,
            "title": EVENT_TITLES[event],
            "body": build_message(event, payload),
            "data": payload,
            "sent_at": utcnow().isoformat(),
        }

    async def notify(self, recipient: str, event: BoostEvent, payload: dict) -> None:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.url, json=self._body(recipient, event, payload)) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    logger.error(f"Notification webhook rejected {event.value}: {response.status} - {error_text}")
                    return
                logger.debug(f"Delivered {event.value} notification for {recipient}")


def get_notification_dispatcher(webhook_url: Optional[str] = None) -> NotificationDispatcher:
    if webhook_url:
        return WebhookDispatcher(webhook_url)
    return LoggingDispatcher()
