from typing import Callable

from dotke.config import settings
from dotke.db.session import async_session
from dotke.redis_client import redis_client
from dotke.services.attempts import AttemptRegistry
from dotke.services.booking_store import BookingStore
from dotke.services.confirmation_channel import WebSocketChannel
from dotke.services.payment_gateway import get_adapter
from dotke.services.reconciler import PaymentReconciler, PaymentRequest


booking_store = BookingStore(async_session)
attempt_registry = AttemptRegistry(session_factory=async_session, redis=redis_client)


def get_booking_store() -> BookingStore:
    return booking_store


def get_registry() -> AttemptRegistry:
    return attempt_registry


def get_redis():
    return redis_client


def build_reconciler(request: PaymentRequest) -> PaymentReconciler:
    return PaymentReconciler(
        request,
        gateway=get_adapter(settings.PAYMENT_PROVIDER),
        channel_factory=WebSocketChannel,
        store=booking_store,
    )


def get_reconciler_factory() -> Callable[[PaymentRequest], PaymentReconciler]:
    return build_reconciler
