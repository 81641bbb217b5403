"""
Boost Queue components package.

- store: durable per-category FIFO queue and active slot
- admission: purchase flow and queue admission
- cancellation: cancellation with tiered refunds
- reconciler: periodic expiry and promotion
- projector: one-way status projection onto businesses and subscriptions
- queries: read-side status and statistics
"""
from app.services.boost_queue.admission import BoostAdmissionService
from app.services.boost_queue.cancellation import BoostCancellationService
from app.services.boost_queue.projector import StatusProjector
from app.services.boost_queue.queries import BoostQueueQueries
from app.services.boost_queue.reconciler import BoostQueueReconciler
from app.services.boost_queue.refunds import RefundDecision, calculate_refund
from app.services.boost_queue.store import CategoryQueueStore

__all__ = [
    "BoostAdmissionService",
    "BoostCancellationService",
    "BoostQueueQueries",
    "BoostQueueReconciler",
    "CategoryQueueStore",
    "RefundDecision",
    "StatusProjector",
    "calculate_refund",
]
