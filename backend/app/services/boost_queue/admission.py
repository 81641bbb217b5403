"""
Queue admission.

A paid boost either takes a free slot immediately (first occupant) or joins
the tail of its category queue. The payment-aware purchase flow wraps
admission: the gateway is called before and after the locked critical
section, never inside it.
"""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.distributed_lock import DistributedLockManager, get_lock_manager
from app.exceptions import (
    APIError,
    BusinessNotFoundError,
    CategoryNotFoundError,
    DuplicateEntryError,
    PaymentGatewayError,
    PaymentNotCompletedError,
    SubscriptionNotFoundError,
)
from app.models import (
    BoostQueueEntry,
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
)
from app.repositories.business import BusinessRepository, CategoryRepository
from app.repositories.category_queue import BoostQueueEntryRepository
from app.repositories.subscription import SubscriptionRepository
from app.schemas.boost_queue import AdmissionResult, PurchaseStartResponse
from app.services.boost_queue.projector import StatusProjector
from app.services.boost_queue.refunds import RefundAction, RefundExecutor, record_refund_failure, refund_idempotency_key
from app.services.boost_queue.store import CategoryQueueStore, find_open_entry
from app.services.notifications import BoostEvent, NotificationDispatcher, entry_payload
from app.services.payment_gateway.interface import PaymentGatewayInterface
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class BoostAdmissionService:
    def __init__(
        self,
        session_factory: Callable[..., AsyncSession],
        payment_gateway: PaymentGatewayInterface,
        notifier: Optional[NotificationDispatcher] = None,
        lock_manager: Optional[DistributedLockManager] = None,
        cache=None,
        boost_duration: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
        category_queue_store_class=CategoryQueueStore,
        business_repository_class=BusinessRepository,
        category_repository_class=CategoryRepository,
        subscription_repository_class=SubscriptionRepository,
        entry_repository_class=BoostQueueEntryRepository,
    ):
        self.session_factory = session_factory
        self.payment_gateway = payment_gateway
        self.notifier = notifier
        self.lock_manager = lock_manager or get_lock_manager()
        self.cache = cache
        self.boost_duration = boost_duration or settings.boost_duration
        self.clock = clock
        self.category_queue_store_class = category_queue_store_class
        self.business_repository_class = business_repository_class
        self.category_repository_class = category_repository_class
        self.subscription_repository_class = subscription_repository_class
        self.entry_repository_class = entry_repository_class
        self.refund_executor = RefundExecutor(payment_gateway)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def admit(self, business_id: uuid.UUID, subscription_id: uuid.UUID) -> AdmissionResult:
        """
        Places a paid boost subscription in its category queue. Serialized per
        category so only one racing purchaser wins the first-occupant path.
        """
        category_id = await self._resolve_category(business_id)

        async with self.lock_manager.category_lock(category_id):
            async with self.session_factory() as session:
                entry, queue, activated = await self._admit_locked(session, business_id, subscription_id)
                await session.commit()

        result = AdmissionResult(
            subscription_id=entry.subscription_id,
            business_id=entry.business_id,
            category_id=queue.category_id,
            category_name=queue.category_name,
            status=entry.status,
            activated_immediately=activated,
            position=entry.position,
            estimated_start_time=entry.estimated_start_time,
            estimated_end_time=entry.estimated_end_time,
            boost_start_time=entry.boost_start_time,
            boost_end_time=entry.boost_end_time,
        )

        if self.notifier:
            self.notifier.dispatch(entry.business_owner_id, BoostEvent.CREATED, entry_payload(entry, queue.category_name))
            follow_up = BoostEvent.ACTIVATED if activated else BoostEvent.QUEUED
            self.notifier.dispatch(entry.business_owner_id, follow_up, entry_payload(entry, queue.category_name))
        await self._invalidate(queue.category_id)

        logger.info(
            f"Admitted boost for {entry.business_name} in {queue.category_name}: "
            f"{'active until ' + entry.boost_end_time.isoformat() if activated else 'queued at position ' + str(entry.position)}"
        )
        return result

    async def _resolve_category(self, business_id: uuid.UUID) -> uuid.UUID:
        async with self.session_factory() as session:
            business = await self.business_repository_class(session).get_by_id(business_id)
            if business is None:
                raise BusinessNotFoundError(f"Business {business_id} not found.")
            if business.category_id is None:
                raise CategoryNotFoundError(f"Business {business.name} has no category configured for boosts.")
            return business.category_id

    async def _admit_locked(self, session: AsyncSession, business_id: uuid.UUID, subscription_id: uuid.UUID):
        business = await self.business_repository_class(session).get_by_id(business_id)
        if business is None:
            raise BusinessNotFoundError(f"Business {business_id} not found.")
        subscription = await self.subscription_repository_class(session).get_by_id(subscription_id)
        if subscription is None or subscription.business_id != business.id:
            raise SubscriptionNotFoundError(f"Boost subscription {subscription_id} not found for business {business_id}.")
        if subscription.queue_id is not None:
            raise DuplicateEntryError(f"Boost subscription {subscription_id} has already been admitted.")

        store = self.category_queue_store_class(session, boost_duration=self.boost_duration)
        queue = await store.get_or_create(business.category_id)

        if find_open_entry(queue, business.id):
            raise DuplicateEntryError(f"{business.name} already has a pending or active boost in {queue.category_name}.")

        now = self.clock()
        entry = BoostQueueEntry(
            id=uuid.uuid4(),
            business_id=business.id,
            business_name=business.name,
            business_owner_id=business.owner_id,
            subscription_id=subscription.id,
            payment_intent_id=subscription.payment_intent_id,
            amount_paid=subscription.amount,
            currency=subscription.currency,
            created_at=now,
        )

        activated = not queue.has_active and not queue.pending_entries
        if activated:
            await store.activate_immediately(queue, entry, now)
        else:
            await store.add_to_queue(queue, entry, now)

        await StatusProjector(session).project_entry(entry, queue, business=business, subscription=subscription)
        await session.flush()
        return entry, queue, activated

    # ------------------------------------------------------------------
    # Payment-aware purchase flow
    # ------------------------------------------------------------------

    async def start_purchase(
        self,
        business_id: uuid.UUID,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> PurchaseStartResponse:
        """
        Validates the purchase, creates the payment intent and records a
        pending boost subscription. Rejections happen before any charge.
        """
        amount = Decimal(amount if amount is not None else settings.BOOST_PRICE)
        currency = (currency or settings.BOOST_CURRENCY).lower()

        async with self.session_factory() as session:
            business = await self.business_repository_class(session).get_by_id(business_id)
            if business is None:
                raise BusinessNotFoundError(f"Business {business_id} not found.")
            category = await self.category_repository_class(session).get(business.category_id) if business.category_id else None
            if category is None or not category.is_active:
                raise CategoryNotFoundError(f"Business {business.name} has no category configured for boosts.")
            if await self.entry_repository_class(session).get_open_entry_for_business(business.id):
                raise DuplicateEntryError(f"{business.name} already has a pending or active boost in {category.name}.")

            owner_id = business.owner_id
            customer_id = business.owner.payment_customer_id if business.owner else None
            category_id = category.id

        subscription_id = uuid.uuid4()
        intent = await self.payment_gateway.create_payment_intent(
            amount,
            currency,
            customer_id=customer_id,
            metadata={
                "type": SubscriptionType.BOOST.value,
                "business_id": str(business_id),
                "category_id": str(category_id),
                "subscription_id": str(subscription_id),
            },
            idempotency_key=f"boost-intent-{subscription_id}",
        )

        try:
            async with self.session_factory() as session:
                await self.subscription_repository_class(session).create(Subscription(
                    id=subscription_id,
                    business_id=business_id,
                    owner_id=owner_id,
                    subscription_type=SubscriptionType.BOOST,
                    status=SubscriptionStatus.PENDING,
                    amount=amount,
                    currency=currency,
                    payment_intent_id=intent["id"],
                    boost_category_id=category_id,
                ))
                await session.commit()
        except Exception:
            logger.exception(f"Failed to record boost subscription for intent {intent['id']}; canceling the intent")
            try:
                await self.payment_gateway.cancel_payment_intent(intent["id"])
            except PaymentGatewayError as cancel_error:
                logger.error(f"Could not cancel orphaned payment intent {intent['id']}: {cancel_error}")
            raise

        logger.info(f"Started boost purchase {subscription_id} for business {business_id} ({amount} {currency})")
        return PurchaseStartResponse(
            subscription_id=subscription_id,
            payment_intent_id=intent["id"],
            client_secret=intent.get("client_secret"),
            amount=amount,
            currency=currency,
            payment_status=intent["status"],
        )

    async def confirm_purchase(self, subscription_id: uuid.UUID) -> AdmissionResult:
        """
        Admits a boost once its payment succeeded. A paid purchase that can no
        longer be admitted is refunded in full before the error is raised.
        Confirming an already admitted subscription returns its current state.
        """
        async with self.session_factory() as session:
            subscription = await self.subscription_repository_class(session).get_by_id(subscription_id)
            if subscription is None or subscription.subscription_type != SubscriptionType.BOOST:
                raise SubscriptionNotFoundError(f"Boost subscription {subscription_id} not found.")
            if subscription.queue_id is not None:
                return await self._existing_admission(session, subscription)
            if subscription.status != SubscriptionStatus.PENDING:
                raise PaymentNotCompletedError(f"Boost subscription {subscription_id} is {subscription.status.value}.")
            business_id = subscription.business_id
            payment_intent_id = subscription.payment_intent_id

        intent = await self.payment_gateway.get_payment_intent(payment_intent_id)
        if intent["status"] != "succeeded":
            raise PaymentNotCompletedError(f"Payment {payment_intent_id} is {intent['status']}.")

        try:
            return await self.admit(business_id, subscription_id)
        except (DuplicateEntryError, CategoryNotFoundError, BusinessNotFoundError) as e:
            # A concurrent confirmation of the same purchase may have admitted it
            async with self.session_factory() as session:
                subscription = await self.subscription_repository_class(session).get_by_id(subscription_id)
                if subscription.queue_id is not None:
                    return await self._existing_admission(session, subscription)
            await self._compensate(subscription_id, e)
            raise

    async def _existing_admission(self, session: AsyncSession, subscription: Subscription) -> AdmissionResult:
        entry = next(
            (e for e in await self.entry_repository_class(session).get_history_for_business(subscription.business_id)
             if e.subscription_id == subscription.id),
            None,
        )
        if entry is None:
            raise SubscriptionNotFoundError(f"No boost queue entry recorded for subscription {subscription.id}.")
        category = await self.category_repository_class(session).get(subscription.boost_category_id)
        return AdmissionResult(
            subscription_id=subscription.id,
            business_id=subscription.business_id,
            category_id=subscription.boost_category_id,
            category_name=category.name if category else "",
            status=entry.status,
            activated_immediately=False,
            position=entry.position,
            estimated_start_time=entry.estimated_start_time,
            estimated_end_time=entry.estimated_end_time,
            boost_start_time=entry.boost_start_time,
            boost_end_time=entry.boost_end_time,
        )

    async def _compensate(self, subscription_id: uuid.UUID, reason: APIError) -> None:
        """
        Refunds a charge whose admission was rejected. A failed refund is left
        in pending_compensation for the reconciler to retry.
        """
        async with self.session_factory() as session:
            subscription = await self.subscription_repository_class(session).get_by_id(subscription_id)
            now = self.clock()
            subscription.status = SubscriptionStatus.CANCELED
            subscription.canceled_at = now
            subscription.refund_percent = 100
            subscription.refund_amount = subscription.amount

            try:
                refund_status, reference = await self.refund_executor.execute(
                    subscription.payment_intent_id,
                    RefundAction.CANCEL_INTENT_OR_REFUND,
                    subscription.amount,
                    idempotency_key=refund_idempotency_key(subscription),
                )
                subscription.refund_status = refund_status
                subscription.refund_id = reference
                subscription.refund_error = None
                logger.warning(f"Refunded boost purchase {subscription.id} in full: {reason.message}")
            except PaymentGatewayError as e:
                record_refund_failure(subscription, e)
                logger.error(f"Compensating refund for boost purchase {subscription.id} failed, queued for retry: {e.message}")

            await session.commit()

    async def _invalidate(self, category_id) -> None:
        if self.cache:
            await self.cache.invalidate_boost_views(category_id)
