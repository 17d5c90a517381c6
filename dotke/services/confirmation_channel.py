"""Duplex channel that delivers STK push results from the payment relay.

The relay pushes the Daraja callback for a checkout to every socket that
announced interest in it with ``{"checkoutId": ...}``. Frames are JSON
objects; the shape varies between relay versions, so ``ConfirmationMessage``
accepts the known layouts.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from dotke.config import settings

logger = logging.getLogger(__name__)

_RECEIPT_KEYS = ("MpesaReceiptNumber", "ReceiptNumber", "receipt", "transactionId")


class ChannelError(Exception):
    pass


def _coerce_code(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class ConfirmationMessage:
    correlation_id: Optional[str]
    result_code: Optional[int]
    reason: Optional[str] = None
    receipt: Optional[str] = None
    raw: Dict = field(default_factory=dict, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @classmethod
    def from_payload(cls, payload: Dict) -> "ConfirmationMessage":
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        body = payload.get("Body") if isinstance(payload.get("Body"), dict) else {}
        callback = body.get("stkCallback") if isinstance(body.get("stkCallback"), dict) else {}

        correlation_id = (
            payload.get("CheckoutRequestID")
            or payload.get("checkoutId")
            or data.get("CheckoutRequestID")
            or callback.get("CheckoutRequestID")
        )
        code = payload.get("ResultCode", payload.get("resultCode", callback.get("ResultCode")))
        reason = payload.get("ResultDesc") or payload.get("resultDesc") or callback.get("ResultDesc")

        receipt = None
        metadata = payload.get("CallbackMetadata") or callback.get("CallbackMetadata") or {}
        items = metadata.get("Item") if isinstance(metadata, dict) else None
        for item in items or []:
            if isinstance(item, dict) and item.get("Name") == "MpesaReceiptNumber":
                receipt = item.get("Value")
                break
        if receipt is None:
            receipt = next((payload[k] for k in _RECEIPT_KEYS if payload.get(k)), None)

        return cls(
            correlation_id=str(correlation_id) if correlation_id else None,
            result_code=_coerce_code(code),
            reason=reason,
            receipt=str(receipt) if receipt is not None else None,
            raw=payload,
        )


def parse_frame(frame) -> Optional[ConfirmationMessage]:
    """Decode one websocket frame; returns None for anything that is not a JSON object."""
    try:
        payload = json.loads(frame)
    except (TypeError, ValueError):
        logger.debug("ignoring non-json frame")
        return None
    if not isinstance(payload, dict):
        return None
    return ConfirmationMessage.from_payload(payload)


class ConfirmationChannel(ABC):
    """One connection to the relay. Reconnecting means building a new channel."""

    @abstractmethod
    async def connect(self) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def subscribe(self, correlation_id: str) -> None:
        raise NotImplementedError()

    @abstractmethod
    def messages(self) -> AsyncIterator[ConfirmationMessage]:
        """Yield decoded messages until the connection closes."""
        raise NotImplementedError()

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError()


class WebSocketChannel(ConfirmationChannel):
    def __init__(self, url: Optional[str] = None, open_timeout: Optional[float] = None, keepalive_interval: Optional[float] = None):
        self.url = url if url is not None else settings.WS_URL
        self.open_timeout = open_timeout if open_timeout is not None else settings.CHANNEL_OPEN_TIMEOUT_SECONDS
        self.keepalive_interval = keepalive_interval if keepalive_interval is not None else settings.CHANNEL_KEEPALIVE_SECONDS
        self._ws = None
        self._keepalive: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        if not self.url:
            raise ChannelError("WS_URL is not configured")
        try:
            self._ws = await websockets.connect(self.url, open_timeout=self.open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise ChannelError(f"could not connect to {self.url}: {exc}") from exc
        self._keepalive = asyncio.create_task(self._keepalive_loop())

    async def subscribe(self, correlation_id: str) -> None:
        await self._send({"checkoutId": correlation_id})

    async def messages(self) -> AsyncIterator[ConfirmationMessage]:
        if self._ws is None:
            raise ChannelError("channel is not connected")
        try:
            async for frame in self._ws:
                message = parse_frame(frame)
                if message is not None:
                    yield message
        except ConnectionClosed as exc:
            logger.info("confirmation channel closed", extra={"code": getattr(exc.rcvd, "code", None)})

    async def close(self) -> None:
        if self._keepalive is not None:
            self._keepalive.cancel()
            self._keepalive = None
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()

    async def _send(self, payload: Dict) -> None:
        if self._ws is None:
            raise ChannelError("channel is not connected")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as exc:
            raise ChannelError("connection closed while sending") from exc

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await self._send({"type": "ping"})
            except ChannelError:
                return
