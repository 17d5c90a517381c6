from dataclasses import dataclass, field
from typing import Dict, Optional
from uuid import uuid4
import logging

import httpx

from dotke.config import settings

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    pass


class GatewayUnreachable(PaymentError):
    """The charge request never got an answer (transport error or timeout)."""


class GatewayRejected(PaymentError):
    """The gateway answered but did not accept the charge."""


@dataclass
class ChargeResult:
    # CheckoutRequestID for M-PESA; None when the gateway refused the push
    correlation_id: Optional[str]
    description: str = ""
    raw: Dict = field(default_factory=dict)


class BaseAdapter:
    provider_name: str = "base"

    async def initiate_charge(self, amount: int, payer_phone: str, account_reference: str) -> ChargeResult:
        raise NotImplementedError()


class MpesaAdapter(BaseAdapter):
    """STK push through the relay service that fronts the Daraja API."""

    provider_name = "mpesa"
    transaction_desc = "Domain Booking"

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url if url is not None else settings.STK_API_URL
        self.timeout = timeout if timeout is not None else settings.CHARGE_TIMEOUT_SECONDS
        self._transport = transport

    async def initiate_charge(self, amount: int, payer_phone: str, account_reference: str) -> ChargeResult:
        if not self.url:
            raise GatewayRejected("STK_API_URL is not configured")
        payload = {
            "phoneNumber": payer_phone,
            "amount": amount,
            "accountReference": account_reference,
            "transactionDesc": self.transaction_desc,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=payload)
        except httpx.TimeoutException as exc:
            raise GatewayUnreachable("Payment service did not respond in time") from exc
        except httpx.TransportError as exc:
            raise GatewayUnreachable(f"Payment service unreachable: {exc}") from exc

        try:
            data = resp.json()
        except ValueError as exc:
            logger.error(
                "stk_push_bad_response",
                extra={"code": resp.status_code, "path": self.url, "account_reference": account_reference},
            )
            raise GatewayRejected(f"Unexpected response from payment service (HTTP {resp.status_code})") from exc
        if not isinstance(data, dict):
            raise GatewayRejected(f"Unexpected response from payment service (HTTP {resp.status_code})")

        description = data.get("errorMessage") or data.get("ResponseDescription") or data.get("CustomerMessage") or ""
        checkout_id = data.get("CheckoutRequestID")
        if resp.status_code >= 400 or not checkout_id:
            logger.warning(
                "stk_push_rejected",
                extra={"code": resp.status_code, "account_reference": account_reference, "description": description},
            )
            checkout_id = None
        return ChargeResult(correlation_id=checkout_id, description=description, raw=data)


class SandboxAdapter(BaseAdapter):
    provider_name = "sandbox"

    async def initiate_charge(self, amount: int, payer_phone: str, account_reference: str) -> ChargeResult:
        # No money moves; a relay in sandbox mode answers on the websocket for this id
        checkout_id = f"ws_CO_{uuid4().hex}"
        return ChargeResult(correlation_id=checkout_id, description="Success. Request accepted for processing")


ADAPTERS = {
    "mpesa": MpesaAdapter,
    "sandbox": SandboxAdapter,
}


def get_adapter(name: str) -> BaseAdapter:
    ad = ADAPTERS.get((name or "").lower())
    if not ad:
        raise PaymentError(f"Unknown provider: {name}")
    return ad()
