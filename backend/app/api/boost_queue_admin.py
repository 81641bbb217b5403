import uuid
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from app.schemas.boost_queue import (
    ActiveBoostSchema,
    BoostTrends,
    CancellationResult,
    CancelRequest,
    CategoryQueueSchema,
    CategoryQueueStats,
    GlobalBoostStats,
    ReconcileResult,
    ReconcileSummary,
)
from app.services.boost_queue import BoostCancellationService, BoostQueueQueries, BoostQueueReconciler
from app.api.boosts import get_boost_queries, get_cancellation_service

logger = logging.getLogger(__name__)

router = APIRouter()


def get_reconciler(request: Request) -> BoostQueueReconciler:
    return request.app.state.boost_queue_reconciler


@router.get("/", response_model=List[CategoryQueueSchema])
async def list_boost_queues(queries: BoostQueueQueries = Depends(get_boost_queries)):
    return await queries.list_queues()


@router.get("/stats", response_model=GlobalBoostStats)
async def get_global_boost_stats(queries: BoostQueueQueries = Depends(get_boost_queries)):
    return await queries.get_global_stats()


@router.get("/trends", response_model=BoostTrends)
async def get_boost_trends(
    period_days: int = Query(default=30, ge=1, le=365, description="Number of days to report, ending now"),
    queries: BoostQueueQueries = Depends(get_boost_queries),
):
    """
    Boost purchases and revenue per day.
    """
    return await queries.get_boost_trends(period_days)


@router.get("/active", response_model=List[ActiveBoostSchema])
async def get_active_boosts(queries: BoostQueueQueries = Depends(get_boost_queries)):
    """
    Every currently active boost across all categories.
    """
    return await queries.get_all_active_boosts()


@router.get("/reconciler", response_model=dict)
async def get_reconciler_status(reconciler: BoostQueueReconciler = Depends(get_reconciler)):
    return reconciler.get_status()


@router.post("/reconcile", response_model=ReconcileSummary)
async def reconcile_all_queues(reconciler: BoostQueueReconciler = Depends(get_reconciler)):
    """
    Runs one reconciliation pass over every category immediately.
    """
    return await reconciler.run_once()


@router.get("/{category_id}", response_model=CategoryQueueSchema)
async def get_category_boost_queue(category_id: uuid.UUID, queries: BoostQueueQueries = Depends(get_boost_queries)):
    return await queries.get_category_queue(category_id)


@router.get("/{category_id}/stats", response_model=CategoryQueueStats)
async def get_category_boost_stats(category_id: uuid.UUID, queries: BoostQueueQueries = Depends(get_boost_queries)):
    return await queries.get_category_queue_stats(category_id)


@router.post("/{category_id}/reconcile", response_model=ReconcileResult)
async def reconcile_category_queue(category_id: uuid.UUID, reconciler: BoostQueueReconciler = Depends(get_reconciler)):
    return await reconciler.reconcile_category(category_id)


@router.delete("/{category_id}/businesses/{business_id}", response_model=CancellationResult)
async def remove_business_from_queue(
    category_id: uuid.UUID,
    business_id: uuid.UUID,
    removal: Optional[CancelRequest] = Body(None),
    cancellation_service: BoostCancellationService = Depends(get_cancellation_service),
):
    """
    Removes a business from a category queue. The refund follows the same
    policy as an owner cancellation.
    """
    reason = removal.reason if removal else None
    return await cancellation_service.admin_remove_business(category_id, business_id, reason)
