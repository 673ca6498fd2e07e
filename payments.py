"""
Payment gateway clients.

The order workflow only needs two calls: initialize a transaction (returns a
redirect URL for the buyer) and verify it later by reference. Amounts cross
this boundary in minor units (kobo) as integers.
"""
import json
import logging
from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx
from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel, Field

from config import Settings
from errors import GatewayError

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "order_"


def to_minor_units(amount: float) -> int:
    """Convert a major-unit amount to integer minor units (1.005 -> 101)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def order_reference(order_id) -> str:
    return f"{REFERENCE_PREFIX}{order_id}"


class InitResult(BaseModel):
    status: bool
    redirect_url: Optional[str] = None
    message: Optional[str] = None


class Verification(BaseModel):
    status: bool
    reference: str
    amount_minor: int = Field(0, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    channel: Optional[str] = None
    paid_at: Optional[str] = None
    message: Optional[str] = None


class PaymentGateway(ABC):
    """Interface shared by the real and simulated gateways."""

    name = "gateway"

    @abstractmethod
    def initialize(self, email: str, amount_minor: int, reference: str, callback_url: str,
                   metadata: Dict[str, Any]) -> InitResult:
        ...

    @abstractmethod
    def verify(self, reference: str) -> Verification:
        ...


def _parse_metadata(raw) -> Dict[str, Any]:
    # Paystack echoes metadata back either as an object or as a JSON string
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class PaystackGateway(PaymentGateway):
    name = "paystack"

    def __init__(self, secret_key: str, base_url: str = "https://api.paystack.co", timeout: float = 10.0,
                 client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self.client.headers["Authorization"] = f"Bearer {secret_key}"

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Paystack %s %s failed: %s", method, path, exc)
            raise GatewayError("Payment gateway unreachable", {"reason": str(exc)})
        try:
            body = response.json()
        except ValueError:
            raise GatewayError("Payment gateway returned an unreadable response",
                               {"status_code": response.status_code})
        if response.status_code >= 500:
            raise GatewayError(body.get("message") or "Payment gateway error",
                               {"status_code": response.status_code})
        return body

    def initialize(self, email, amount_minor, reference, callback_url, metadata) -> InitResult:
        body = self._request(
            "POST",
            "/transaction/initialize",
            json={
                "email": email,
                "amount": amount_minor,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata,
            },
        )
        data = body.get("data") or {}
        return InitResult(
            status=bool(body.get("status")),
            redirect_url=data.get("authorization_url"),
            message=body.get("message"),
        )

    def verify(self, reference) -> Verification:
        body = self._request("GET", f"/transaction/verify/{reference}")
        data = body.get("data") or {}
        return Verification(
            status=bool(body.get("status")) and data.get("status") == "success",
            reference=data.get("reference") or reference,
            amount_minor=data.get("amount") or 0,
            metadata=_parse_metadata(data.get("metadata")),
            channel=data.get("channel"),
            paid_at=data.get("paid_at") or data.get("paidAt"),
            message=data.get("gateway_response") or body.get("message"),
        )


class SimulatedGateway(PaymentGateway):
    """
    Stand-in used outside production. Every initialize succeeds and every
    verify reports the referenced order as fully paid, resolving `order_<id>`
    or a bare order id straight against the order collection.
    """

    name = "simulated"

    def __init__(self, database, frontend_url: str = "http://localhost:5173"):
        self.db = database
        self.frontend_url = frontend_url

    def initialize(self, email, amount_minor, reference, callback_url, metadata) -> InitResult:
        logger.info("Simulated payment of %d for %s", amount_minor, reference)
        return InitResult(
            status=True,
            redirect_url=f"{callback_url}?reference={reference}",
            message="Simulated authorization URL created",
        )

    def verify(self, reference) -> Verification:
        order_id = reference[len(REFERENCE_PREFIX):] if reference.startswith(REFERENCE_PREFIX) else reference
        try:
            order = self.db["order"].find_one({"_id": ObjectId(order_id)})
        except InvalidId:
            order = None
        if not order:
            # an unknown reference verifies with no metadata, like an unrelated charge
            return Verification(status=True, reference=reference, message="Test payment successful")
        return Verification(
            status=True,
            reference=reference,
            amount_minor=to_minor_units(order["total_price"]),
            metadata={"orderId": str(order["_id"]), "userId": order["buyer_id"]},
            channel="test",
            message="Test payment successful",
        )


def build_gateway(settings: Settings, database) -> PaymentGateway:
    if settings.is_production:
        if not settings.paystack_secret_key:
            raise RuntimeError("PAYSTACK_SECRET_KEY must be set in production")
        return PaystackGateway(
            settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            timeout=settings.gateway_timeout,
        )
    return SimulatedGateway(database, settings.frontend_url)
