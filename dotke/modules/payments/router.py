from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List

from dotke.config import settings
from dotke.deps import get_booking_store, get_reconciler_factory, get_redis, get_registry
from dotke.modules.bookings.router import booking_response
from dotke.schemas.payment import AttemptResponse, OutcomeResponse, PaymentInitiateRequest, ReconciliationEntry
from dotke.services.attempts import AttemptRegistry, PaymentAttempt, list_manual_reconciliation
from dotke.services.booking_store import BookingStore, BookingStoreError
from dotke.services.domains import (
    InvalidDomain,
    InvalidPhoneNumber,
    make_account_reference,
    normalize_domain,
    normalize_phone,
)
from dotke.services.reconciler import PaymentRequest

router = APIRouter()


def attempt_response(attempt: PaymentAttempt) -> AttemptResponse:
    reconciler = attempt.reconciler
    req = reconciler.request
    outcome = None
    if reconciler.outcome is not None:
        o = reconciler.outcome
        outcome = OutcomeResponse(
            kind=o.kind.value,
            message=o.message,
            charged=o.charged,
            requires_manual_reconciliation=o.requires_manual_reconciliation,
            receipt=o.receipt,
            booking=booking_response(o.booking) if o.booking else None,
        )
    return AttemptResponse(
        attempt_id=attempt.attempt_id,
        domain_name=req.domain_name,
        owner_id=req.owner_id,
        amount=req.amount,
        currency=settings.CURRENCY,
        account_reference=req.account_reference,
        state=reconciler.state.value,
        status=req.status.value,
        correlation_id=req.correlation_id,
        started_at=attempt.started_at,
        outcome=outcome,
    )


@router.post("/stk", response_model=AttemptResponse, status_code=status.HTTP_202_ACCEPTED)
async def initiate_payment(
    req: PaymentInitiateRequest,
    store: BookingStore = Depends(get_booking_store),
    registry: AttemptRegistry = Depends(get_registry),
    build_reconciler=Depends(get_reconciler_factory),
):
    """Send an STK push for a week's booking and track its confirmation in the background."""
    try:
        domain_name = normalize_domain(req.domain_name)
        phone = normalize_phone(req.phone)
    except (InvalidDomain, InvalidPhoneNumber) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    if registry.find_pending(req.owner_id, domain_name):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A payment for this domain is already in progress")
    try:
        available = await store.check_availability(domain_name)
    except BookingStoreError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Booking store unavailable")
    if not available:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"{domain_name} is already booked")

    payment_request = PaymentRequest(
        domain_name=domain_name,
        owner_id=req.owner_id,
        amount=settings.RATE_PER_WEEK,
        payer_phone=phone,
        account_reference=make_account_reference(),
    )
    attempt = registry.start(build_reconciler(payment_request))
    return attempt_response(attempt)


@router.get("/attempts/{attempt_id}", response_model=AttemptResponse)
async def get_attempt(attempt_id: str, registry: AttemptRegistry = Depends(get_registry)):
    attempt = registry.get(attempt_id)
    if not attempt:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown payment attempt")
    return attempt_response(attempt)


@router.post("/attempts/{attempt_id}/cancel", response_model=AttemptResponse)
async def cancel_attempt(attempt_id: str, registry: AttemptRegistry = Depends(get_registry)):
    """Stop waiting for a confirmation. The charge itself cannot be recalled once the PIN is entered."""
    attempt = registry.cancel(attempt_id)
    if not attempt:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown payment attempt")
    if not attempt.task.done():
        await registry.wait(attempt_id)
    return attempt_response(attempt)


@router.get("/reconciliation", response_model=List[ReconciliationEntry])
async def manual_reconciliation(limit: int = Query(100, ge=1, le=1000), redis=Depends(get_redis)):
    """Charges that went through without a booking, oldest first."""
    return await list_manual_reconciliation(redis, limit=limit)
