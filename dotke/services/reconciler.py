"""Payment confirmation for a single domain booking attempt.

A ``PaymentReconciler`` starts an STK push, waits for the matching result on
the confirmation channel, and writes the booking once the payment succeeds.
Everything that can happen to an attempt arrives as an event on one queue and
is applied by ``_handle``; once the attempt is terminal every later event is
dropped, which is what makes duplicate or late confirmations harmless.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from dotke.config import settings
from dotke.metrics import (
    CHANNEL_RECONNECTS,
    CONFIRMATION_LATENCY,
    PAYMENT_FAILURE,
    PAYMENT_SUCCESS,
    PERSIST_RETRIES,
)
from dotke.services.booking_store import BookingRecord, BookingStoreError, DomainAlreadyBooked, utcnow
from dotke.services.confirmation_channel import ChannelError, ConfirmationChannel, ConfirmationMessage
from dotke.services.payment_gateway import BaseAdapter, GatewayUnreachable, PaymentError

logger = logging.getLogger(__name__)


class ReconcilerState(str, Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"


TERMINAL_STATES = frozenset(
    {ReconcilerState.CONFIRMED, ReconcilerState.FAILED, ReconcilerState.TIMED_OUT, ReconcilerState.ABANDONED}
)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"


class OutcomeKind(str, Enum):
    CONFIRMED = "confirmed"
    GATEWAY_REJECTED = "gateway_rejected"
    INITIATION_UNREACHABLE = "initiation_unreachable"
    PAYMENT_DECLINED = "payment_declined"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    DOMAIN_NO_LONGER_AVAILABLE = "domain_no_longer_available"
    PERSISTENCE_FAILED = "persistence_failed"
    ABANDONED = "abandoned"


# the charge went through but no booking was written
_UNBOOKED_CHARGES = frozenset({OutcomeKind.DOMAIN_NO_LONGER_AVAILABLE, OutcomeKind.PERSISTENCE_FAILED})


@dataclass
class PaymentRequest:
    domain_name: str
    owner_id: str
    amount: int
    payer_phone: str
    account_reference: str
    correlation_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError("amount must be positive")


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    message: str
    correlation_id: Optional[str] = None
    booking: Optional[BookingRecord] = None
    receipt: Optional[str] = None

    @property
    def charged(self) -> bool:
        return self.kind is OutcomeKind.CONFIRMED or self.kind in _UNBOOKED_CHARGES

    @property
    def requires_manual_reconciliation(self) -> bool:
        return self.kind in _UNBOOKED_CHARGES


# Events


@dataclass(frozen=True)
class ChargeInitiated:
    correlation_id: str


@dataclass(frozen=True)
class ChargeFailed:
    kind: OutcomeKind
    message: str


@dataclass(frozen=True)
class ChannelOpened:
    pass


@dataclass(frozen=True)
class ChannelMessage:
    message: ConfirmationMessage


@dataclass(frozen=True)
class ChannelClosed:
    reason: str = ""


@dataclass(frozen=True)
class TimeoutFired:
    pass


@dataclass(frozen=True)
class Cancelled:
    reason: str = "cancelled"


_STATUS_FOR_STATE = {
    ReconcilerState.CONFIRMED: PaymentStatus.CONFIRMED,
    ReconcilerState.FAILED: PaymentStatus.FAILED,
    ReconcilerState.TIMED_OUT: PaymentStatus.TIMED_OUT,
    ReconcilerState.ABANDONED: PaymentStatus.ABANDONED,
}


def backoff_delay(failures: int, base: float, cap: float) -> float:
    """Delay before reconnect number `failures` (1-based): base, 2*base, 4*base ... capped."""
    return min(cap, base * 2 ** (failures - 1))


class PaymentReconciler:
    def __init__(
        self,
        request: PaymentRequest,
        gateway: BaseAdapter,
        channel_factory: Callable[[], ConfirmationChannel],
        store,
        *,
        charge_timeout: Optional[float] = None,
        confirmation_timeout: Optional[float] = None,
        backoff_base: Optional[float] = None,
        backoff_cap: Optional[float] = None,
        persist_attempts: Optional[int] = None,
        persist_backoff: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.request = request
        self._gateway = gateway
        self._channel_factory = channel_factory
        self._store = store
        self._clock = clock
        self.charge_timeout = charge_timeout if charge_timeout is not None else settings.CHARGE_TIMEOUT_SECONDS
        self.confirmation_timeout = (
            confirmation_timeout if confirmation_timeout is not None else settings.CONFIRMATION_TIMEOUT_SECONDS
        )
        self.backoff_base = backoff_base if backoff_base is not None else settings.CHANNEL_BACKOFF_BASE_SECONDS
        self.backoff_cap = backoff_cap if backoff_cap is not None else settings.CHANNEL_BACKOFF_CAP_SECONDS
        self.persist_attempts = persist_attempts if persist_attempts is not None else settings.PERSIST_MAX_ATTEMPTS
        self.persist_backoff = persist_backoff if persist_backoff is not None else settings.PERSIST_BACKOFF_SECONDS

        self._state = ReconcilerState.IDLE
        self._outcome: Optional[Outcome] = None
        self._reconnect_failures = 0
        self._events: asyncio.Queue = asyncio.Queue()
        self._initiation_task: Optional[asyncio.Task] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._started_at: Optional[float] = None

    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._outcome

    @property
    def provider(self) -> str:
        return getattr(self._gateway, "provider_name", "unknown")

    def cancel(self, reason: str = "cancelled") -> None:
        """Abandon the attempt. Has no effect once the attempt is terminal."""
        self._events.put_nowait(Cancelled(reason))

    async def run(self) -> Outcome:
        if self._state is not ReconcilerState.IDLE:
            raise RuntimeError("a reconciler runs a single attempt")
        self._started_at = time.monotonic()
        self._set_state(ReconcilerState.INITIATING)
        self._initiation_task = asyncio.create_task(self._initiate())
        try:
            while self._outcome is None:
                event = await self._events.get()
                await self._handle(event)
        finally:
            await self._release()
        return self._outcome

    # transitions

    async def _handle(self, event) -> None:
        if self._state in TERMINAL_STATES:
            logger.debug(
                "event after terminal state ignored",
                extra={"event": type(event).__name__, "state": self._state.value, "correlation_id": self.request.correlation_id},
            )
            return

        if isinstance(event, Cancelled):
            self._finish(ReconcilerState.ABANDONED, OutcomeKind.ABANDONED, f"Payment attempt abandoned ({event.reason})")
        elif self._state is ReconcilerState.INITIATING:
            if isinstance(event, ChargeInitiated):
                self._await_confirmation(event.correlation_id)
            elif isinstance(event, ChargeFailed):
                self._finish(ReconcilerState.FAILED, event.kind, event.message)
        elif self._state is ReconcilerState.AWAITING_CONFIRMATION:
            if isinstance(event, ChannelOpened):
                self._reconnect_failures = 0
            elif isinstance(event, ChannelMessage):
                await self._on_message(event.message)
            elif isinstance(event, ChannelClosed):
                self._reconnect(event.reason)
            elif isinstance(event, TimeoutFired):
                self._finish(
                    ReconcilerState.TIMED_OUT,
                    OutcomeKind.CONFIRMATION_TIMEOUT,
                    "Payment is still pending. Check your M-PESA messages to confirm whether it went through.",
                )

    def _await_confirmation(self, correlation_id: str) -> None:
        self.request.correlation_id = correlation_id
        self._set_state(ReconcilerState.AWAITING_CONFIRMATION)
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.confirmation_timeout, self._events.put_nowait, TimeoutFired())
        self._listener_task = asyncio.create_task(self._listen(correlation_id, 0))

    async def _on_message(self, message: ConfirmationMessage) -> None:
        if message.correlation_id != self.request.correlation_id:
            return
        if message.result_code is None:
            # acks and keepalive echoes for our checkout carry no result
            return
        if message.succeeded:
            await self._commit(message)
        else:
            self._finish(
                ReconcilerState.FAILED,
                OutcomeKind.PAYMENT_DECLINED,
                message.reason or "Payment not completed",
                receipt=message.receipt,
            )

    def _reconnect(self, reason: str) -> None:
        self._reconnect_failures += 1
        delay = backoff_delay(self._reconnect_failures, self.backoff_base, self.backoff_cap)
        CHANNEL_RECONNECTS.inc()
        logger.warning(
            "confirmation channel lost, reconnecting",
            extra={"correlation_id": self.request.correlation_id, "reason": reason, "delay": delay, "attempt": self._reconnect_failures},
        )
        self._listener_task = asyncio.create_task(self._listen(self.request.correlation_id, delay))

    async def _commit(self, message: ConfirmationMessage) -> None:
        req = self.request
        try:
            available = await self._store.check_availability(req.domain_name)
        except BookingStoreError as exc:
            # advisory only; the write below decides
            logger.warning("availability re-check failed", extra={"domain_name": req.domain_name, "error": str(exc)})
            available = True
        if not available:
            self._domain_taken(message)
            return

        last_error = None
        for attempt in range(1, self.persist_attempts + 1):
            try:
                booking = await self._store.persist_booking(
                    req.domain_name, req.owner_id, self._clock(), payment_ref=message.receipt or req.correlation_id
                )
            except DomainAlreadyBooked:
                self._domain_taken(message)
                return
            except BookingStoreError as exc:
                last_error = exc
                logger.warning(
                    "booking write failed",
                    extra={"domain_name": req.domain_name, "correlation_id": req.correlation_id, "attempt": attempt, "error": str(exc)},
                )
                if attempt < self.persist_attempts:
                    PERSIST_RETRIES.inc()
                    await asyncio.sleep(self.persist_backoff * 2 ** (attempt - 1))
            else:
                self._finish(
                    ReconcilerState.CONFIRMED,
                    OutcomeKind.CONFIRMED,
                    f"You have booked {req.domain_name}.",
                    booking=booking,
                    receipt=message.receipt,
                )
                return

        self._finish(
            ReconcilerState.FAILED,
            OutcomeKind.PERSISTENCE_FAILED,
            f"Payment received but the booking for {req.domain_name} could not be saved ({last_error}). Contact support quoting {message.receipt or req.correlation_id}.",
            receipt=message.receipt,
        )

    def _domain_taken(self, message: ConfirmationMessage) -> None:
        req = self.request
        self._finish(
            ReconcilerState.FAILED,
            OutcomeKind.DOMAIN_NO_LONGER_AVAILABLE,
            f"Payment received but {req.domain_name} was booked by someone else in the meantime. Contact support quoting {message.receipt or req.correlation_id}.",
            receipt=message.receipt,
        )

    def _finish(self, state: ReconcilerState, kind: OutcomeKind, message: str, booking=None, receipt=None) -> None:
        self._set_state(state)
        self.request.status = _STATUS_FOR_STATE[state]
        self._outcome = Outcome(
            kind=kind, message=message, correlation_id=self.request.correlation_id, booking=booking, receipt=receipt
        )
        if self._started_at is not None:
            CONFIRMATION_LATENCY.observe(time.monotonic() - self._started_at)
        if kind is OutcomeKind.CONFIRMED:
            PAYMENT_SUCCESS.labels(provider=self.provider).inc()
        else:
            PAYMENT_FAILURE.labels(provider=self.provider, kind=kind.value).inc()

        log_extra = {
            "outcome": kind.value,
            "domain_name": self.request.domain_name,
            "owner_id": self.request.owner_id,
            "correlation_id": self.request.correlation_id,
            "account_reference": self.request.account_reference,
            "receipt": receipt,
        }
        if kind is OutcomeKind.PERSISTENCE_FAILED:
            logger.critical("charged but booking not recorded; manual reconciliation required", extra=log_extra)
        elif kind is OutcomeKind.DOMAIN_NO_LONGER_AVAILABLE:
            logger.error("charged for a domain that is no longer available", extra=log_extra)
        elif kind in (OutcomeKind.CONFIRMED, OutcomeKind.ABANDONED):
            logger.info("payment attempt finished", extra=log_extra)
        else:
            logger.warning("payment attempt failed: %s", message, extra=log_extra)

    def _set_state(self, state: ReconcilerState) -> None:
        logger.debug("reconciler %s -> %s", self._state.value, state.value, extra={"correlation_id": self.request.correlation_id})
        self._state = state

    # tasks feeding the event queue

    async def _initiate(self) -> None:
        req = self.request
        try:
            result = await asyncio.wait_for(
                self._gateway.initiate_charge(req.amount, req.payer_phone, req.account_reference),
                timeout=self.charge_timeout,
            )
        except asyncio.TimeoutError:
            self._events.put_nowait(
                ChargeFailed(OutcomeKind.INITIATION_UNREACHABLE, "Payment service did not respond in time. Please try again.")
            )
        except GatewayUnreachable as exc:
            self._events.put_nowait(ChargeFailed(OutcomeKind.INITIATION_UNREACHABLE, str(exc)))
        except PaymentError as exc:
            self._events.put_nowait(ChargeFailed(OutcomeKind.GATEWAY_REJECTED, str(exc)))
        except Exception as exc:
            # nothing else would ever move the attempt out of Initiating
            logger.exception("charge initiation crashed", extra={"account_reference": req.account_reference})
            self._events.put_nowait(ChargeFailed(OutcomeKind.INITIATION_UNREACHABLE, f"Payment initiation failed: {exc}"))
        else:
            if result.correlation_id:
                self._events.put_nowait(ChargeInitiated(result.correlation_id))
            else:
                self._events.put_nowait(
                    ChargeFailed(OutcomeKind.GATEWAY_REJECTED, result.description or "Failed to initiate payment.")
                )

    async def _listen(self, correlation_id: str, delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)
        channel = self._channel_factory()
        try:
            await channel.connect()
            await channel.subscribe(correlation_id)
            self._events.put_nowait(ChannelOpened())
            async for message in channel.messages():
                self._events.put_nowait(ChannelMessage(message))
            reason = "closed by peer"
        except (ChannelError, OSError) as exc:
            reason = str(exc)
        except Exception as exc:
            # every exit must post ChannelClosed
            logger.exception("confirmation listener crashed", extra={"correlation_id": correlation_id})
            reason = f"listener error: {exc}"
        finally:
            await channel.close()
        self._events.put_nowait(ChannelClosed(reason))

    async def _release(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        tasks = [t for t in (self._initiation_task, self._listener_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
