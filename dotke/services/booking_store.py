from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import logging

from sqlalchemy import select as sa_select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from dotke.config import settings
from dotke.models.models import DomainBooking

logger = logging.getLogger(__name__)


class BookingStoreError(Exception):
    """The store could not be reached or the write did not complete."""


class DomainAlreadyBooked(Exception):
    def __init__(self, domain_name: str):
        super().__init__(f"{domain_name} is already booked")
        self.domain_name = domain_name


@dataclass(frozen=True)
class BookingRecord:
    id: int
    domain_name: str
    owner_id: str
    booked_at: datetime
    expires_at: datetime
    payment_ref: Optional[str] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or utcnow())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_record(row: DomainBooking) -> BookingRecord:
    return BookingRecord(
        id=row.id,
        domain_name=row.domain_name,
        owner_id=row.owner_id,
        booked_at=_as_utc(row.booked_at),
        expires_at=_as_utc(row.expires_at),
        payment_ref=row.payment_ref,
    )


class BookingStore:
    """Authoritative record of who holds which domain.

    Only one row per domain may be current; the unique constraint on
    ``(domain_name, is_current)`` arbitrates concurrent writers.
    """

    def __init__(self, session_factory: async_sessionmaker, validity: Optional[timedelta] = None):
        self._session_factory = session_factory
        self.validity = validity or timedelta(days=settings.BOOKING_VALIDITY_DAYS)

    async def get_active_booking(self, domain_name: str, now: Optional[datetime] = None) -> Optional[BookingRecord]:
        now = now or utcnow()
        stmt = (
            sa_select(DomainBooking)
            .where(DomainBooking.domain_name == domain_name)
            .where(DomainBooking.is_current.is_(True))
            .where(DomainBooking.expires_at > now)
        )
        try:
            async with self._session_factory() as session:
                res = await session.execute(stmt)
                row = res.scalars().first()
        except (SQLAlchemyError, OSError) as exc:
            raise BookingStoreError(str(exc)) from exc
        return _to_record(row) if row else None

    async def check_availability(self, domain_name: str) -> bool:
        return await self.get_active_booking(domain_name) is None

    async def persist_booking(self, domain_name: str, owner_id: str, booked_at: datetime, payment_ref: Optional[str] = None) -> BookingRecord:
        booked_at = _as_utc(booked_at)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    stmt = (
                        sa_select(DomainBooking)
                        .where(DomainBooking.domain_name == domain_name)
                        .where(DomainBooking.is_current.is_(True))
                        .with_for_update()
                    )
                    res = await session.execute(stmt)
                    current = res.scalars().first()
                    if current is not None:
                        if _as_utc(current.expires_at) > booked_at:
                            raise DomainAlreadyBooked(domain_name)
                        # expired holder gives way; keep the row for the owner's history
                        current.is_current = None
                        await session.flush()

                    booking = DomainBooking(
                        domain_name=domain_name,
                        owner_id=owner_id,
                        payment_ref=payment_ref,
                        booked_at=booked_at,
                        expires_at=booked_at + self.validity,
                        is_current=True,
                    )
                    session.add(booking)
                # committed
        except IntegrityError as exc:
            # lost the race to another writer for the same domain
            raise DomainAlreadyBooked(domain_name) from exc
        except (SQLAlchemyError, OSError) as exc:
            raise BookingStoreError(str(exc)) from exc

        logger.info("domain booked", extra={"domain_name": domain_name, "owner_id": owner_id, "booking_id": booking.id})
        return _to_record(booking)

    async def list_owner_bookings(self, owner_id: str) -> List[BookingRecord]:
        stmt = (
            sa_select(DomainBooking)
            .where(DomainBooking.owner_id == owner_id)
            .order_by(DomainBooking.booked_at.desc(), DomainBooking.id.desc())
        )
        try:
            async with self._session_factory() as session:
                res = await session.execute(stmt)
                rows = res.scalars().all()
        except (SQLAlchemyError, OSError) as exc:
            raise BookingStoreError(str(exc)) from exc
        return [_to_record(r) for r in rows]
