"""
Boost cancellation.

The queue transition (remove, promote the next entry, project) happens under
the category lock. The refund is settled against the payment gateway after
the lock is released; until it succeeds the subscription stays in
``pending_compensation`` so a crash or gateway outage never loses a refund.
"""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.distributed_lock import DistributedLockManager, get_lock_manager
from app.exceptions import AlreadyTerminalError, BusinessNotFoundError, EntryNotFoundError, PaymentGatewayError
from app.models import BoostStatus, RefundStatus, Subscription
from app.repositories.business import BusinessRepository
from app.repositories.category_queue import BoostQueueEntryRepository, CategoryQueueRepository
from app.repositories.subscription import SubscriptionRepository
from app.schemas.boost_queue import CancellationResult
from app.schemas.refund_policy import RefundPolicy
from app.services.boost_queue.projector import StatusProjector
from app.services.boost_queue.refunds import (
    RefundAction,
    RefundDecision,
    RefundExecutor,
    calculate_refund,
    load_refund_policy,
    record_refund_failure,
    refund_idempotency_key,
)
from app.services.boost_queue.store import CategoryQueueStore, find_open_entry
from app.services.notifications import BoostEvent, NotificationDispatcher, entry_payload
from app.services.payment_gateway.interface import PaymentGatewayInterface
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


def describe_refund(decision: RefundDecision, currency: str, refund_status: RefundStatus) -> str:
    if decision.action == RefundAction.NONE:
        return "Boost canceled. No refund issued."
    amount = f"{decision.amount} {currency.upper()} ({decision.percent}%)"
    if refund_status == RefundStatus.PENDING_COMPENSATION:
        return f"Boost canceled. Refund of {amount} could not be issued yet and will be retried automatically."
    if refund_status == RefundStatus.INTENT_CANCELED:
        return f"Boost canceled before payment was captured. The {amount} charge was voided."
    return f"Boost canceled. Refund of {amount} issued."


class BoostCancellationService:
    def __init__(
        self,
        session_factory: Callable[..., AsyncSession],
        payment_gateway: PaymentGatewayInterface,
        notifier: Optional[NotificationDispatcher] = None,
        lock_manager: Optional[DistributedLockManager] = None,
        cache=None,
        refund_policy: Optional[RefundPolicy] = None,
        boost_duration: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
        category_queue_store_class=CategoryQueueStore,
        business_repository_class=BusinessRepository,
        subscription_repository_class=SubscriptionRepository,
        entry_repository_class=BoostQueueEntryRepository,
        category_queue_repository_class=CategoryQueueRepository,
    ):
        self.session_factory = session_factory
        self.payment_gateway = payment_gateway
        self.notifier = notifier
        self.lock_manager = lock_manager or get_lock_manager()
        self.cache = cache
        self.refund_policy = refund_policy or load_refund_policy()
        self.boost_duration = boost_duration or settings.boost_duration
        self.clock = clock
        self.category_queue_store_class = category_queue_store_class
        self.business_repository_class = business_repository_class
        self.subscription_repository_class = subscription_repository_class
        self.entry_repository_class = entry_repository_class
        self.category_queue_repository_class = category_queue_repository_class
        self.refund_executor = RefundExecutor(payment_gateway)

    async def cancel_boost(self, business_id: uuid.UUID, reason: Optional[str] = None) -> CancellationResult:
        """
        Cancels the business's pending or active boost and settles its refund.
        The entry is removed, and the next entry promoted, before this returns.
        The lock is taken on the queue holding the entry, which may differ from
        the business's current category.
        """
        async with self.session_factory() as session:
            business = await self.business_repository_class(session).get_by_id(business_id)
            if business is None:
                raise BusinessNotFoundError(f"Business {business_id} not found.")
            entry = await self.entry_repository_class(session).get_open_entry_for_business(business_id)
            if entry is None:
                await self._raise_missing_entry(session, business_id)
            queue = await self.category_queue_repository_class(session).get(entry.queue_id)
            category_id = queue.category_id

        return await self._cancel(category_id, business_id, reason)

    async def admin_remove_business(self, category_id: uuid.UUID, business_id: uuid.UUID, reason: Optional[str] = None) -> CancellationResult:
        """
        Administrative removal from a specific category queue. Refunds follow
        the same policy as an owner cancellation.
        """
        logger.info(f"Admin removal of business {business_id} from category {category_id} queue: {reason or 'no reason given'}")
        return await self._cancel(category_id, business_id, reason or "Removed by administrator")

    async def _cancel(self, category_id: uuid.UUID, business_id: uuid.UUID, reason: Optional[str]) -> CancellationResult:
        async with self.lock_manager.category_lock(category_id):
            async with self.session_factory() as session:
                store = self.category_queue_store_class(session, boost_duration=self.boost_duration)
                queue = await store.get(category_id)
                entry = find_open_entry(queue, business_id) if queue else None
                if entry is None:
                    await self._raise_missing_entry(session, business_id)

                now = self.clock()
                decision = calculate_refund(
                    entry.status,
                    entry.amount_paid,
                    now,
                    entry.boost_start_time,
                    entry.boost_end_time,
                    self.refund_policy,
                )

                removed = await store.remove_from_queue(queue, business_id, now)
                promoted = None
                if decision.entry_status == BoostStatus.ACTIVE:
                    promoted = await store.activate_next(queue, now)

                projector = StatusProjector(session)
                await projector.project_entry(removed, queue)
                await projector.project_queue(queue)

                subscription = await self.subscription_repository_class(session).get_by_id(removed.subscription_id)
                subscription.refund_percent = decision.percent
                subscription.refund_amount = decision.amount
                subscription.refund_status = (
                    RefundStatus.NONE if decision.action == RefundAction.NONE else RefundStatus.PENDING_COMPENSATION
                )
                await session.commit()

        logger.info(
            f"Canceled {decision.entry_status.value} boost for {removed.business_name} in {queue.category_name} "
            f"({reason or 'no reason given'}); refund {decision.percent}% = {decision.amount}"
        )

        refund_status, refund_id, refund_error = await self._settle(subscription.id, decision)

        if self.notifier:
            payload = entry_payload(removed, queue.category_name, refund_amount=decision.amount, refund_percent=decision.percent, reason=reason)
            self.notifier.dispatch(removed.business_owner_id, BoostEvent.CANCELED, payload)
            if promoted:
                self.notifier.dispatch(promoted.business_owner_id, BoostEvent.ACTIVATED, entry_payload(promoted, queue.category_name))
        if self.cache:
            await self.cache.invalidate_boost_views(category_id)

        return CancellationResult(
            business_id=business_id,
            subscription_id=removed.subscription_id,
            category_id=category_id,
            previous_status=decision.entry_status,
            refund_percent=decision.percent,
            refund_amount=decision.amount,
            currency=removed.currency,
            refund_status=refund_status,
            refund_id=refund_id,
            usage_fraction=decision.usage_fraction,
            refund_error=refund_error,
            promoted_business_id=promoted.business_id if promoted else None,
            message=describe_refund(decision, removed.currency, refund_status),
        )

    async def _raise_missing_entry(self, session: AsyncSession, business_id: uuid.UUID):
        latest = await self.entry_repository_class(session).get_latest_entry_for_business(business_id)
        if latest is None or BoostStatus(latest.status) in (BoostStatus.PENDING, BoostStatus.ACTIVE):
            raise EntryNotFoundError(f"Business {business_id} has no pending or active boost queue entry.")
        raise AlreadyTerminalError(f"Boost for business {business_id} is already {BoostStatus(latest.status).value}. No refund issued.")

    async def _settle(self, subscription_id: uuid.UUID, decision: RefundDecision):
        """
        Executes the refund and records the outcome. Returns
        (refund_status, refund_id, error_message).
        """
        if decision.action == RefundAction.NONE:
            return RefundStatus.NONE, None, None

        async with self.session_factory() as session:
            subscription = await self.subscription_repository_class(session).get_by_id(subscription_id)
            outcome = await self._attempt_refund(subscription, decision.action, decision.amount)
            await session.commit()
            return subscription.refund_status, subscription.refund_id, outcome

    async def _attempt_refund(self, subscription: Subscription, action: RefundAction, amount: Decimal) -> Optional[str]:
        """
        One settlement attempt. Updates the subscription's refund bookkeeping
        and returns the gateway error message on failure.
        """
        try:
            refund_status, reference = await self.refund_executor.execute(
                subscription.payment_intent_id,
                action,
                amount,
                idempotency_key=refund_idempotency_key(subscription),
            )
        except PaymentGatewayError as e:
            record_refund_failure(subscription, e)
            logger.error(
                f"Refund of {amount} for boost subscription {subscription.id} failed "
                f"(attempt {subscription.refund_attempts}): {e.message}"
            )
            return e.message

        subscription.refund_status = refund_status
        subscription.refund_id = reference
        subscription.refund_error = None
        logger.info(f"Settled refund for boost subscription {subscription.id}: {refund_status.value} {reference or ''}".rstrip())
        return None

    async def retry_pending_refunds(self, limit: int = 50, grace: timedelta = timedelta(minutes=1)) -> int:
        """
        Retries refunds left in pending_compensation. Refunds younger than
        ``grace`` are skipped so an in-flight cancellation settles its own.
        Returns the number of refunds settled.
        """
        settled = 0
        async with self.session_factory() as session:
            repo = self.subscription_repository_class(session)
            pending = await repo.get_pending_compensation(limit=limit, canceled_before=self.clock() - grace)
            for subscription in pending:
                full_refund = Decimal(subscription.refund_amount or 0) >= Decimal(subscription.amount)
                action = RefundAction.CANCEL_INTENT_OR_REFUND if full_refund else RefundAction.REFUND
                error = await self._attempt_refund(subscription, action, subscription.refund_amount or Decimal("0"))
                await session.commit()
                if error is None:
                    settled += 1

        if settled:
            logger.info(f"Settled {settled} pending boost refunds")
        return settled
