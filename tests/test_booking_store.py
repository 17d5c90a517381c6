"""
Tests for the SQL booking store, run against a throwaway SQLite database.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dotke.models.models import DomainBooking
from dotke.services.booking_store import BookingStore, BookingStoreError, DomainAlreadyBooked, utcnow
from dotke.services.reconciler import OutcomeKind
from tests.conftest import FakeGateway, FakeRelay, make_reconciler, make_request


class TestPersistBooking:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_new_booking_holds_domain_for_a_week(self, booking_store: BookingStore) -> None:
        now = utcnow()
        assert await booking_store.check_availability("foo.co.ke")

        record = await booking_store.persist_booking("foo.co.ke", "user-1", now, payment_ref="NLJ7RT61SV")

        assert record.id is not None
        assert record.expires_at - record.booked_at == timedelta(days=7)
        assert record.payment_ref == "NLJ7RT61SV"
        assert record.is_active(now)
        assert not await booking_store.check_availability("foo.co.ke")
        assert await booking_store.check_availability("bar.co.ke")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_active_booking_rejects_second_writer(self, booking_store: BookingStore) -> None:
        now = utcnow()
        await booking_store.persist_booking("foo.co.ke", "user-1", now)

        with pytest.raises(DomainAlreadyBooked) as exc_info:
            await booking_store.persist_booking("foo.co.ke", "user-2", now + timedelta(minutes=1))

        assert exc_info.value.domain_name == "foo.co.ke"
        active = await booking_store.get_active_booking("foo.co.ke")
        assert active.owner_id == "user-1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_booking_gives_way(self, booking_store: BookingStore, session_factory) -> None:
        """An expired holder is superseded, and its row stays for history."""
        now = utcnow()
        old = await booking_store.persist_booking("foo.co.ke", "user-1", now - timedelta(days=8))
        assert await booking_store.check_availability("foo.co.ke")

        new = await booking_store.persist_booking("foo.co.ke", "user-2", now)

        assert new.id != old.id
        assert (await booking_store.get_active_booking("foo.co.ke")).owner_id == "user-2"
        async with session_factory() as session:
            rows = (await session.execute(select(DomainBooking).order_by(DomainBooking.id))).scalars().all()
        assert [(r.owner_id, r.is_current) for r in rows] == [("user-1", None), ("user-2", True)]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_concurrent_writers_single_winner(self, booking_store: BookingStore) -> None:
        now = utcnow()
        results = await asyncio.gather(
            booking_store.persist_booking("race.co.ke", "user-1", now),
            booking_store.persist_booking("race.co.ke", "user-2", now),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        active = await booking_store.get_active_booking("race.co.ke")
        assert active.owner_id == winners[0].owner_id


class TestQueries:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_owner_bookings_newest_first(self, booking_store: BookingStore) -> None:
        now = utcnow()
        await booking_store.persist_booking("one.co.ke", "user-1", now - timedelta(days=2))
        await booking_store.persist_booking("two.or.ke", "user-1", now)
        await booking_store.persist_booking("three.me.ke", "user-2", now)

        bookings = await booking_store.list_owner_bookings("user-1")

        assert [b.domain_name for b in bookings] == ["two.or.ke", "one.co.ke"]
        assert await booking_store.list_owner_bookings("nobody") == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_custom_validity(self, session_factory) -> None:
        store = BookingStore(session_factory, validity=timedelta(days=14))
        now = utcnow()

        record = await store.persist_booking("foo.ne.ke", "user-1", now)

        assert record.expires_at == now + timedelta(days=14)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unreachable_database_raises_store_error(self, tmp_path) -> None:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dotke.db'}")
        store = BookingStore(async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False))
        try:
            with pytest.raises(BookingStoreError):
                await store.check_availability("foo.co.ke")
            with pytest.raises(BookingStoreError):
                await store.persist_booking("foo.co.ke", "user-1", utcnow())
        finally:
            await engine.dispose()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_two_payers_same_domain_one_booking(booking_store: BookingStore) -> None:
    """Two confirmed payments for one domain: one booking, one charge flagged for reconciliation."""
    relays = [FakeRelay(), FakeRelay()]
    reconcilers = [
        make_reconciler(FakeGateway("CO_A"), relays[0], booking_store, request=make_request(owner_id="user-a"), persist_backoff=0.05),
        make_reconciler(FakeGateway("CO_B"), relays[1], booking_store, request=make_request(owner_id="user-b"), persist_backoff=0.05),
    ]
    tasks = [asyncio.create_task(r.run()) for r in reconcilers]
    for relay in relays:
        await relay.wait_for_subscriptions(1)
    relays[0].push({"CheckoutRequestID": "CO_A", "ResultCode": 0})
    relays[1].push({"CheckoutRequestID": "CO_B", "ResultCode": 0})

    outcomes = await asyncio.wait_for(asyncio.gather(*tasks), 5)

    kinds = sorted(o.kind.value for o in outcomes)
    assert kinds == sorted([OutcomeKind.CONFIRMED.value, OutcomeKind.DOMAIN_NO_LONGER_AVAILABLE.value])
    winner = next(o for o in outcomes if o.kind is OutcomeKind.CONFIRMED)
    active = await booking_store.get_active_booking("foo.co.ke")
    assert active.id == winner.booking.id
