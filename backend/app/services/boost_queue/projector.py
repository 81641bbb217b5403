"""
Status projector.

Mirrors queue entry state onto the owning Business and boost Subscription.
The projection is one-way: entries are authoritative and the projected fields
are rebuilt from them after every activation, expiry, cancellation or
position shift.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import BoostQueueEntry, BoostStatus, Business, CategoryQueue, Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

SUBSCRIPTION_STATUS_FOR_ENTRY = {
    BoostStatus.PENDING: SubscriptionStatus.PENDING,
    BoostStatus.ACTIVE: SubscriptionStatus.ACTIVE,
    BoostStatus.EXPIRED: SubscriptionStatus.EXPIRED,
    BoostStatus.CANCELED: SubscriptionStatus.CANCELED,
}


def apply_to_business(business: Business, entry: BoostQueueEntry) -> None:
    if entry.status == BoostStatus.ACTIVE:
        business.is_boosted = True
        business.is_boost_active = True
        business.boost_expiry_at = entry.boost_end_time
        business.boost_subscription_id = entry.subscription_id
        return

    # A pending or finished entry only clears flags it set itself
    if business.boost_subscription_id not in (None, entry.subscription_id):
        return
    business.is_boosted = False
    business.is_boost_active = False
    business.boost_expiry_at = None
    business.boost_subscription_id = None


def apply_to_subscription(subscription: Subscription, entry: BoostQueueEntry, queue: CategoryQueue) -> None:
    status = BoostStatus(entry.status)
    subscription.status = SUBSCRIPTION_STATUS_FOR_ENTRY[status]
    subscription.queue_id = queue.id
    subscription.boost_category_id = queue.category_id
    subscription.is_currently_active = status == BoostStatus.ACTIVE
    subscription.boost_start_time = entry.boost_start_time
    subscription.boost_end_time = entry.boost_end_time

    if status == BoostStatus.PENDING:
        subscription.queue_position = entry.position
        subscription.estimated_start_time = entry.estimated_start_time
        subscription.estimated_end_time = entry.estimated_end_time
        subscription.expires_at = entry.estimated_end_time
    elif status == BoostStatus.ACTIVE:
        subscription.queue_position = None
        subscription.estimated_start_time = entry.boost_start_time
        subscription.estimated_end_time = entry.boost_end_time
        subscription.expires_at = entry.boost_end_time
    else:
        subscription.queue_position = None
        subscription.estimated_start_time = None
        subscription.estimated_end_time = None
        if status == BoostStatus.CANCELED:
            subscription.canceled_at = entry.canceled_at
            subscription.expires_at = entry.canceled_at
        else:
            subscription.expires_at = entry.expired_at


class StatusProjector:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def project_entry(
        self,
        entry: BoostQueueEntry,
        queue: CategoryQueue,
        business: Optional[Business] = None,
        subscription: Optional[Subscription] = None,
    ) -> None:
        business = business or await self.session.get(Business, entry.business_id)
        subscription = subscription or await self.session.get(Subscription, entry.subscription_id)

        if business is None:
            logger.warning(f"Cannot project boost status: business {entry.business_id} no longer exists")
        else:
            apply_to_business(business, entry)

        if subscription is None:
            logger.warning(f"Cannot project boost status: subscription {entry.subscription_id} no longer exists")
        else:
            apply_to_subscription(subscription, entry, queue)

    async def project_queue(self, queue: CategoryQueue) -> None:
        """
        Re-projects the active entry and every pending entry; used after a
        mutation shifted positions or estimates.
        """
        active = queue.active_entry
        if active is not None:
            await self.project_entry(active, queue)
        for entry in queue.pending_entries:
            await self.project_entry(entry, queue)
