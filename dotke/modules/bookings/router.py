from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List

from dotke.deps import get_booking_store
from dotke.schemas.booking import AvailabilityResponse, BookingResponse
from dotke.services.booking_store import BookingRecord, BookingStore, BookingStoreError, utcnow
from dotke.services.domains import InvalidDomain, normalize_domain

router = APIRouter()


def booking_response(record: BookingRecord) -> BookingResponse:
    return BookingResponse(
        booking_id=record.id,
        domain_name=record.domain_name,
        owner_id=record.owner_id,
        booked_at=record.booked_at,
        expires_at=record.expires_at,
        payment_ref=record.payment_ref,
        active=record.is_active(utcnow()),
    )


@router.get("/availability", response_model=AvailabilityResponse)
async def domain_availability(domain: str = Query(..., description="label or full .KE name"), store: BookingStore = Depends(get_booking_store)):
    """Whether a domain is free to book right now. Advisory: the booking write has the final say."""
    try:
        domain_name = normalize_domain(domain)
    except InvalidDomain as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    try:
        active = await store.get_active_booking(domain_name)
    except BookingStoreError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Booking store unavailable")
    return AvailabilityResponse(
        domain_name=domain_name,
        available=active is None,
        expires_at=active.expires_at if active else None,
    )


@router.get("", response_model=List[BookingResponse])
async def list_bookings(owner_id: str = Query(..., min_length=1), store: BookingStore = Depends(get_booking_store)):
    try:
        records = await store.list_owner_bookings(owner_id)
    except BookingStoreError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Booking store unavailable")
    return [booking_response(r) for r in records]
