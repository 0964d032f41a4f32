"""
External payment gateway adapter.

Amounts crossing this boundary are in minor currency units (paise). The
gateway's own retry and availability behavior is not managed here.
"""

import hashlib
import hmac
import logging
import os
from typing import Dict, Optional, Protocol

import httpx
from dotenv import load_dotenv

from courtbook.services.exceptions import GatewayError
from courtbook.utils.constants import DEFAULT_CURRENCY

load_dotenv()

logger = logging.getLogger(__name__)

GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://api.razorpay.com/v1")
GATEWAY_KEY_ID = os.getenv("GATEWAY_KEY_ID", "")
GATEWAY_KEY_SECRET = os.getenv("GATEWAY_KEY_SECRET", "")
GATEWAY_WEBHOOK_SECRET = os.getenv("GATEWAY_WEBHOOK_SECRET", "")

REQUEST_TIMEOUT_SECONDS = 10.0


def compute_signature(secret: str, body: bytes) -> str:
    """HMAC-SHA256 hex digest of a raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """Constant-time comparison of a webhook signature header."""
    secret = GATEWAY_WEBHOOK_SECRET if secret is None else secret
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, body), signature)


class PaymentGateway(Protocol):
    async def create_order(
        self, amount_minor: int, receipt: str, notes: Optional[Dict] = None, currency: str = DEFAULT_CURRENCY
    ) -> Dict: ...

    async def issue_refund(
        self, payment_id: str, amount_minor: Optional[int] = None, notes: Optional[Dict] = None
    ) -> Dict: ...


class RazorpayGateway:
    """Razorpay-compatible REST client (HTTP basic auth with key id/secret)."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id if key_id is not None else GATEWAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else GATEWAY_KEY_SECRET
        self.base_url = (base_url or GATEWAY_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _post(self, path: str, payload: Dict) -> Dict:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                resp = await client.post(path, json=payload)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Gateway {path} returned {e.response.status_code}: {e.response.text}")
            raise GatewayError(
                f"Payment gateway rejected the request ({e.response.status_code})",
                details={"path": path},
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Gateway {path} request failed: {e}")
            raise GatewayError("Payment gateway is unreachable", details={"path": path}) from e

    async def create_order(
        self, amount_minor: int, receipt: str, notes: Optional[Dict] = None, currency: str = DEFAULT_CURRENCY
    ) -> Dict:
        """
        Open a gateway order.

        Args:
            amount_minor: Amount in minor units
            receipt: Merchant receipt string (``txn_<id>``)
            notes: String key/values echoed back on webhooks

        Returns:
            Gateway order payload (``id`` is the order id)
        """
        order = await self._post(
            "/orders",
            {
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": {k: str(v) for k, v in (notes or {}).items()},
            },
        )
        logger.info(f"Opened gateway order {order.get('id')} for {receipt} ({amount_minor})")
        return order

    async def issue_refund(
        self, payment_id: str, amount_minor: Optional[int] = None, notes: Optional[Dict] = None
    ) -> Dict:
        """Refund a captured payment; full refund when amount_minor is None."""
        payload: Dict = {"notes": {k: str(v) for k, v in (notes or {}).items()}}
        if amount_minor is not None:
            payload["amount"] = amount_minor
        refund = await self._post(f"/payments/{payment_id}/refund", payload)
        logger.info(f"Requested gateway refund {refund.get('id')} for payment {payment_id}")
        return refund


_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """Gateway used by the services (a RazorpayGateway unless overridden)."""
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway()
    return _gateway


def set_gateway(gateway: Optional[PaymentGateway]) -> None:
    global _gateway
    _gateway = gateway
