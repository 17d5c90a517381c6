"""
Shared fixtures and in-memory stand-ins for the payment collaborators.
"""
import asyncio
from datetime import timedelta
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dotke.db.base import Base
import dotke.models  # noqa: F401
from dotke.services.booking_store import BookingRecord, BookingStore, BookingStoreError, DomainAlreadyBooked
from dotke.services.confirmation_channel import ChannelError, ConfirmationChannel, ConfirmationMessage
from dotke.services.payment_gateway import BaseAdapter, ChargeResult
from dotke.services.reconciler import PaymentReconciler, PaymentRequest

_CLOSE = object()


class FakeGateway(BaseAdapter):
    """Answers every STK push with a fixed checkout id, or with a scripted failure."""

    provider_name = "fake"

    def __init__(self, correlation_id: Optional[str] = "CO1", error: Optional[Exception] = None, delay: float = 0.0, description: str = ""):
        self.correlation_id = correlation_id
        self.error = error
        self.delay = delay
        self.description = description
        self.calls: List[Dict] = []
        self.cancelled = False

    async def initiate_charge(self, amount, payer_phone, account_reference):
        self.calls.append({"amount": amount, "payer_phone": payer_phone, "account_reference": account_reference})
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return ChargeResult(correlation_id=self.correlation_id, description=self.description)


class FakeChannel(ConfirmationChannel):
    def __init__(self, relay: "FakeRelay"):
        self.relay = relay
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def connect(self):
        self.relay.connect_attempts += 1
        if self.relay.refuse_connects > 0:
            self.relay.refuse_connects -= 1
            raise ChannelError("connection refused")
        self.relay.channels.append(self)

    async def subscribe(self, correlation_id):
        self.relay.subscriptions.append(correlation_id)

    async def messages(self):
        while True:
            item = await self.queue.get()
            if item is _CLOSE:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        self.closed = True


class FakeRelay:
    """Plays the websocket relay: tests push callbacks and drop connections through it."""

    def __init__(self, refuse_connects: int = 0):
        self.refuse_connects = refuse_connects
        self.connect_attempts = 0
        self.channels: List[FakeChannel] = []
        self.subscriptions: List[str] = []

    def factory(self) -> FakeChannel:
        return FakeChannel(self)

    @property
    def current(self) -> FakeChannel:
        return self.channels[-1]

    def push(self, payload: Dict) -> None:
        self.current.queue.put_nowait(ConfirmationMessage.from_payload(payload))

    def drop(self) -> None:
        self.current.queue.put_nowait(_CLOSE)

    def break_with(self, exc: Exception) -> None:
        """Make the current connection's message stream raise ``exc``."""
        self.current.queue.put_nowait(exc)

    async def wait_for_subscriptions(self, count: int = 1, timeout: float = 2.0) -> None:
        async def _poll():
            while len(self.subscriptions) < count:
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_poll(), timeout)


class FakeStore:
    """Booking store double with switchable availability and scripted write failures."""

    def __init__(self, available: bool = True, io_failures: int = 0, already_booked: bool = False):
        self.available = available
        self.io_failures = io_failures
        self.already_booked = already_booked
        self.availability_checks: List[str] = []
        self.persist_calls: List[Dict] = []
        self.records: List[BookingRecord] = []

    async def check_availability(self, domain_name):
        self.availability_checks.append(domain_name)
        return self.available

    async def persist_booking(self, domain_name, owner_id, booked_at, payment_ref=None):
        self.persist_calls.append({"domain_name": domain_name, "owner_id": owner_id, "booked_at": booked_at})
        if self.already_booked:
            raise DomainAlreadyBooked(domain_name)
        if self.io_failures:
            self.io_failures -= 1
            raise BookingStoreError("connection reset by peer")
        record = BookingRecord(
            id=len(self.records) + 1,
            domain_name=domain_name,
            owner_id=owner_id,
            booked_at=booked_at,
            expires_at=booked_at + timedelta(days=7),
            payment_ref=payment_ref,
        )
        self.records.append(record)
        return record


class FakeRedis:
    def __init__(self):
        self.lists: Dict[str, List[str]] = {}

    async def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    async def llen(self, key):
        return len(self.lists.get(key, []))


def make_request(**overrides) -> PaymentRequest:
    fields = dict(
        domain_name="foo.co.ke",
        owner_id="user-1",
        amount=100,
        payer_phone="254712345678",
        account_reference="DOMAIN_1700000000000",
    )
    fields.update(overrides)
    return PaymentRequest(**fields)


def make_reconciler(gateway, relay, store, request: Optional[PaymentRequest] = None, **options) -> PaymentReconciler:
    settings = dict(
        charge_timeout=1.0,
        confirmation_timeout=2.0,
        backoff_base=0.001,
        backoff_cap=0.01,
        persist_attempts=3,
        persist_backoff=0.001,
    )
    settings.update(options)
    return PaymentReconciler(request or make_request(), gateway, relay.factory, store, **settings)


@pytest.fixture
def relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """SQLite database with the full schema, one file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dotke.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def booking_store(session_factory) -> BookingStore:
    return BookingStore(session_factory)
