from prometheus_client import Counter, Gauge, Histogram
from dotke.config import settings
from dotke.redis_client import redis_client

# Payment outcome metrics
PAYMENT_SUCCESS = Counter("dotke_payments_success_total", "Payments confirmed and booked", ["provider"])
PAYMENT_FAILURE = Counter("dotke_payments_failure_total", "Payment attempts ending without a booking", ["provider", "kind"])
CONFIRMATION_LATENCY = Histogram(
    "dotke_payment_confirmation_seconds",
    "Time from charge initiation to terminal outcome",
    buckets=(1, 5, 10, 20, 30, 45, 60, 90, 120, 180),
)

# Confirmation channel / booking store
CHANNEL_RECONNECTS = Counter("dotke_confirmation_channel_reconnects_total", "Confirmation channel reconnect attempts")
PERSIST_RETRIES = Counter("dotke_booking_persist_retries_total", "Booking writes retried after an I/O error")

MANUAL_RECONCILIATION_DEPTH = Gauge(
    "dotke_manual_reconciliation_depth", "Charged-but-not-booked outcomes waiting for an operator"
)


async def update_queue_depth(key: str = None):
    """Refresh the manual reconciliation gauge from the Redis list length."""
    key = key or settings.MANUAL_RECONCILIATION_KEY
    MANUAL_RECONCILIATION_DEPTH.set(await redis_client.llen(key))
