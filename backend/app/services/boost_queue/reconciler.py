"""
Activation/expiry reconciler.

Drives the time-based transitions of every category queue independently of
request traffic:

1. If the active boost's window has elapsed, expire it and promote the head
   of the pending list.
2. Otherwise, if the slot is free, promote the pending head once its
   estimated start has arrived.

Running it twice without time advancing changes nothing.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.distributed_lock import DistributedLockManager, get_lock_manager
from app.exceptions import CategoryNotFoundError
from app.repositories.category_queue import CategoryQueueRepository
from app.schemas.boost_queue import ReconcileResult, ReconcileSummary
from app.services.boost_queue.projector import StatusProjector
from app.services.boost_queue.store import CategoryQueueStore, verify_invariants
from app.services.boost_queue.timing import is_window_elapsed
from app.services.notifications import BoostEvent, NotificationDispatcher, entry_payload
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class BoostQueueReconciler:
    SERVICE_NAME = "boost_queue_reconciler"

    def __init__(
        self,
        session_factory: Callable[..., AsyncSession],
        notifier: Optional[NotificationDispatcher] = None,
        lock_manager: Optional[DistributedLockManager] = None,
        cache=None,
        cancellation_service=None,
        boost_duration: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
        polling_interval_seconds: Optional[int] = None,
        category_queue_store_class=CategoryQueueStore,
        category_queue_repository_class=CategoryQueueRepository,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.lock_manager = lock_manager or get_lock_manager()
        self.cache = cache
        self.cancellation_service = cancellation_service
        self.boost_duration = boost_duration or settings.boost_duration
        self.clock = clock
        self.polling_interval_seconds = polling_interval_seconds or settings.RECONCILER_INTERVAL_SECONDS
        self.category_queue_store_class = category_queue_store_class
        self.category_queue_repository_class = category_queue_repository_class

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.metrics = {
            "cycle_count": 0,
            "expired_count": 0,
            "activated_count": 0,
            "refunds_retried": 0,
            "error_count": 0,
            "last_error": None,
            "last_run_at": None,
        }

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def reconcile_category(self, category_id: uuid.UUID) -> ReconcileResult:
        async with self.lock_manager.category_lock(category_id):
            async with self.session_factory() as session:
                store = self.category_queue_store_class(session, boost_duration=self.boost_duration)
                queue = await store.get(category_id)
                if queue is None:
                    raise CategoryNotFoundError(f"No boost queue exists for category {category_id}.")

                now = self.clock()
                projector = StatusProjector(session)
                expired = activated = None

                if queue.has_active:
                    if is_window_elapsed(now, queue.boost_end_time):
                        expired = await store.expire_current_boost(queue, now)
                        if expired is not None:
                            await projector.project_entry(expired, queue)
                        activated = await store.activate_next(queue, now)
                else:
                    pending = queue.pending_entries
                    if pending and (pending[0].estimated_start_time is None or pending[0].estimated_start_time <= now):
                        activated = await store.activate_next(queue, now)

                if activated is not None:
                    await projector.project_queue(queue)

                violations = verify_invariants(queue, self.boost_duration)
                for violation in violations:
                    logger.error(f"Boost queue invariant violated in {queue.category_name}: {violation}")

                if expired is not None or activated is not None:
                    await session.commit()

        if expired is not None:
            logger.info(f"Reconciler expired boost for {expired.business_name} in {queue.category_name}")
        if activated is not None:
            logger.info(f"Reconciler activated boost for {activated.business_name} in {queue.category_name}")

        if self.notifier:
            if expired is not None:
                self.notifier.dispatch(expired.business_owner_id, BoostEvent.EXPIRED, entry_payload(expired, queue.category_name))
            if activated is not None:
                self.notifier.dispatch(activated.business_owner_id, BoostEvent.ACTIVATED, entry_payload(activated, queue.category_name))
        if self.cache and (expired is not None or activated is not None):
            await self.cache.invalidate_boost_views(category_id)

        return ReconcileResult(
            category_id=queue.category_id,
            category_name=queue.category_name,
            expired_business_id=expired.business_id if expired else None,
            activated_business_id=activated.business_id if activated else None,
            violations=violations,
        )

    async def reconcile_all(self) -> ReconcileSummary:
        """
        Reconciles every category queue. A failing category is logged and
        left for the next tick; it never stops the others.
        """
        async with self.session_factory() as session:
            category_ids = await self.category_queue_repository_class(session).get_all_category_ids()

        summary = ReconcileSummary()
        for category_id in category_ids:
            try:
                result = await self.reconcile_category(category_id)
            except Exception as e:
                summary.errors += 1
                logger.error(f"Failed to reconcile boost queue for category {category_id}: {e}")
                continue

            summary.categories_checked += 1
            if result.expired_business_id:
                summary.expired += 1
            if result.activated_business_id:
                summary.activated += 1
            if result.changed or result.violations:
                summary.results.append(result)

        if self.cancellation_service:
            try:
                summary.refunds_retried = await self.cancellation_service.retry_pending_refunds()
            except Exception as e:
                summary.errors += 1
                logger.error(f"Failed to retry pending boost refunds: {e}")

        return summary

    # ------------------------------------------------------------------
    # Background task
    # ------------------------------------------------------------------

    async def start(self):
        if self.is_running:
            return
        self._running = True
        self._task = asyncio.create_task(self._reconcile_loop())
        logger.info(f"Boost Queue Reconciler Started (interval {self.polling_interval_seconds}s)")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._report_health("stopped")
        logger.info("Boost Queue Reconciler Stopped")

    async def run_once(self) -> ReconcileSummary:
        summary = await self.reconcile_all()
        self.metrics["cycle_count"] += 1
        self.metrics["expired_count"] += summary.expired
        self.metrics["activated_count"] += summary.activated
        self.metrics["refunds_retried"] += summary.refunds_retried
        self.metrics["error_count"] += summary.errors
        self.metrics["last_run_at"] = self.clock().isoformat()
        return summary

    async def _reconcile_loop(self):
        while self._running:
            try:
                summary = await self.run_once()
                await self._report_health("running" if not summary.errors else "degraded")
            except Exception as e:
                self.metrics["error_count"] += 1
                self.metrics["last_error"] = str(e)
                logger.error(f"Error in boost reconciler loop: {e}")
                await self._report_health("error")

            await asyncio.sleep(self.polling_interval_seconds)

    async def _report_health(self, status: str):
        """Report service health to cache."""
        try:
            cache = self.cache
            if cache is None:
                from app.core.cache import get_cache
                cache = await get_cache()
            await cache.update_service_health(self.SERVICE_NAME, status, dict(self.metrics))
        except Exception as e:
            logger.debug(f"Failed to report health: {e}")

    def get_status(self) -> dict:
        return {
            "running": self.is_running,
            "interval_seconds": self.polling_interval_seconds,
            **self.metrics,
        }
