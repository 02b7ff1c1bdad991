"""
Payment gateway client (Razorpay REST API over httpx).

Amounts cross this boundary in minor units (paise).  The gateway's replies
are returned as plain dicts; only the fields the reconciler needs are read.

Signatures
----------
* client checkout:  HMAC-SHA256(key_secret, "<order_id>|<payment_id>")
* webhooks:         HMAC-SHA256(webhook_secret, <raw request body>)

Both are compared in constant time.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from cabbooking.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_order_payment(secret: str, order_id: str, payment_id: str) -> str:
    return _hmac_hex(secret, f"{order_id}|{payment_id}".encode())


def verify_order_payment(
    secret: str, order_id: str, payment_id: str, signature: Optional[str]
) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(
        sign_order_payment(secret, order_id, payment_id), signature
    )


def sign_webhook(secret: str, raw_body: bytes) -> str:
    return _hmac_hex(secret, raw_body)


def verify_webhook(secret: str, raw_body: bytes, signature: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign_webhook(secret, raw_body), signature)


class PaymentGateway(ABC):
    key_id: str

    @abstractmethod
    async def create_order(
        self, amount_minor: int, currency: str, receipt: str, notes: dict
    ) -> dict: ...

    @abstractmethod
    async def refund(self, payment_id: str, amount_minor: int) -> dict: ...


class RazorpayGateway(PaymentGateway):
    def __init__(
        self,
        base_url: str,
        key_id: str,
        key_secret: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.key_id = key_id
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=(key_id, key_secret),
            timeout=timeout,
        )

    async def _post(self, path: str, payload: dict) -> dict:
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Gateway %s returned %s: %s",
                path, exc.response.status_code, exc.response.text[:200],
            )
            raise ServiceUnavailableError("Payment gateway rejected the request") from exc
        except httpx.HTTPError as exc:
            logger.error("Gateway %s unreachable: %s", path, exc)
            raise ServiceUnavailableError("Payment gateway is unavailable") from exc
        try:
            data = response.json()
        except ValueError as exc:
            logger.error("Gateway %s returned a non-JSON body: %s", path, response.text[:200])
            raise ServiceUnavailableError("Payment gateway returned an invalid response") from exc
        if not isinstance(data, dict):
            logger.error("Gateway %s returned unexpected JSON: %r", path, data)
            raise ServiceUnavailableError("Payment gateway returned an invalid response")
        return data

    async def create_order(
        self, amount_minor: int, currency: str, receipt: str, notes: dict
    ) -> dict:
        order = await self._post(
            "/orders",
            {
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": notes,
            },
        )
        logger.info("Gateway order %s created for %s", order.get("id"), receipt)
        return order

    async def refund(self, payment_id: str, amount_minor: int) -> dict:
        return await self._post(
            f"/payments/{payment_id}/refund",
            {"amount": amount_minor, "speed": "optimum"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
