import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request, status

from app.rate_limiter import limiter
from app.schemas.boost_queue import (
    AdmissionResult,
    BusinessQueueStatus,
    CancellationResult,
    CancelRequest,
    PurchaseRequest,
    PurchaseStartResponse,
)
from app.services.boost_queue import (
    BoostAdmissionService,
    BoostCancellationService,
    BoostQueueQueries,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_admission_service(request: Request) -> BoostAdmissionService:
    return request.app.state.boost_admission_service


def get_cancellation_service(request: Request) -> BoostCancellationService:
    return request.app.state.boost_cancellation_service


def get_boost_queries(request: Request) -> BoostQueueQueries:
    return request.app.state.boost_queue_queries


@router.post("/purchase", response_model=PurchaseStartResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def start_boost_purchase(
    request: Request,
    purchase: PurchaseRequest,
    admission_service: BoostAdmissionService = Depends(get_admission_service),
):
    """
    Creates the payment intent for a boost. The client completes payment with
    the returned client secret and then confirms the purchase.
    """
    return await admission_service.start_purchase(purchase.business_id)


@router.post("/{subscription_id}/confirm", response_model=AdmissionResult)
@limiter.limit("20/minute")
async def confirm_boost_purchase(
    request: Request,
    subscription_id: uuid.UUID,
    admission_service: BoostAdmissionService = Depends(get_admission_service),
):
    """
    Admits a paid boost: it becomes active immediately when its category slot
    is free, otherwise it joins the end of the category queue.
    """
    return await admission_service.confirm_purchase(subscription_id)


@router.post("/businesses/{business_id}/cancel", response_model=CancellationResult)
async def cancel_boost(
    business_id: uuid.UUID,
    cancel_request: Optional[CancelRequest] = Body(None),
    cancellation_service: BoostCancellationService = Depends(get_cancellation_service),
):
    reason = cancel_request.reason if cancel_request else None
    return await cancellation_service.cancel_boost(business_id, reason=reason)


@router.get("/businesses/{business_id}/status", response_model=BusinessQueueStatus)
async def get_boost_status(
    business_id: uuid.UUID,
    queries: BoostQueueQueries = Depends(get_boost_queries),
):
    return await queries.get_business_queue_status(business_id)
