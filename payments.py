"""
Payment gateways.

The order workflow talks to one ``PaymentGateway`` picked by PAYMENT_GATEWAY:

- ``none``      cash on delivery only; online payment is refused.
- ``razorpay``  intent + client-side checkout + HMAC signature check.
- ``paypal``    remote order + customer approval + explicit capture.

Amounts are always computed server-side from catalog prices and handed to the
gateway; nothing the client says about money is trusted.
"""
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from errors import PaymentNotCompleted, PaymentVerificationFailed, ValidationError
from schemas import OrderItem

logger = logging.getLogger(__name__)


class PaymentReceipt:
    """Gateway correlation ids for a settled payment."""

    def __init__(self, order_id: str, payment_id: Optional[str]):
        self.order_id = order_id
        self.payment_id = payment_id

    def __repr__(self):
        return f"PaymentReceipt(order_id={self.order_id!r}, payment_id={self.payment_id!r})"


class PaymentGateway:
    name = "none"

    def create_intent(self, amount: float, items: List[OrderItem], user_id: str) -> Dict[str, Any]:
        raise ValidationError("Online payment is not available")

    def confirm(self, details: Dict[str, Any]) -> PaymentReceipt:
        raise ValidationError("Online payment is not available")


class CashOnDeliveryGateway(PaymentGateway):
    name = "none"


def razorpay_signature(secret: str, order_id: str, payment_id: str) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(self, client, key_id: str, key_secret: str, currency: str = "INR"):
        self.client = client
        self.key_id = key_id
        self.key_secret = key_secret
        self.currency = currency

    @classmethod
    def from_settings(cls, settings) -> "RazorpayGateway":
        import razorpay

        client = razorpay.Client(auth=(settings.razorpay_key_id, settings.razorpay_key_secret))
        return cls(client, settings.razorpay_key_id, settings.razorpay_key_secret, settings.razorpay_currency)

    def create_intent(self, amount, items, user_id):
        options = {
            "amount": int(round(amount * 100)),  # minor units (paise)
            "currency": self.currency,
            "receipt": f"order_rcpt_{int(time.time() * 1000)}",
            "notes": {"userId": user_id},
        }
        remote = self.client.order.create(data=options)
        logger.info("Razorpay order %s created for %s %s", remote["id"], remote["amount"], remote["currency"])
        return {
            "success": True,
            "orderId": remote["id"],
            "amount": remote["amount"],
            "currency": remote["currency"],
            "key": self.key_id,
        }

    def confirm(self, details):
        order_id = details.get("razorpay_order_id")
        payment_id = details.get("razorpay_payment_id")
        signature = details.get("razorpay_signature")
        if not (order_id and payment_id and signature):
            raise ValidationError("Payment details are incomplete")
        expected = razorpay_signature(self.key_secret, order_id, payment_id)
        if not hmac.compare_digest(expected.encode(), str(signature).encode()):
            logger.warning("Signature mismatch for Razorpay order %s", order_id)
            raise PaymentVerificationFailed()
        return PaymentReceipt(order_id, payment_id)


class PayPalGateway(PaymentGateway):
    name = "paypal"

    def __init__(self, session, client_id: str, client_secret: str,
                 base_url: str = "https://api-m.sandbox.paypal.com", currency: str = "USD",
                 return_url: str = "", cancel_url: str = "", timeout: float = 30.0):
        self.session = session
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.currency = currency
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "PayPalGateway":
        frontend = settings.frontend_url.rstrip("/")
        return cls(requests.Session(), settings.paypal_client_id, settings.paypal_client_secret,
                   settings.paypal_base_url, settings.paypal_currency,
                   return_url=f"{frontend}/payment-success", cancel_url=f"{frontend}/cart",
                   timeout=settings.payment_timeout)

    def _money(self, value: float) -> Dict[str, str]:
        return {"currency_code": self.currency, "value": f"{value:.2f}"}

    def _access_token(self) -> str:
        resp = self.session.post(
            f"{self.base_url}/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()["access_token"]

    def _post(self, path: str, payload: Optional[Dict[str, Any]] = None, token: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token or self._access_token()}", "Content-Type": "application/json"}
        resp = self.session.post(f"{self.base_url}{path}", json=payload or {}, headers=headers, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def create_intent(self, amount, items, user_id):
        purchase_unit = {
            "reference_id": user_id,
            "amount": {
                **self._money(amount),
                "breakdown": {"item_total": self._money(sum(i.price * i.quantity for i in items))},
            },
            "items": [
                {"name": i.name[:127], "unit_amount": self._money(i.price), "quantity": str(i.quantity)}
                for i in items
            ],
        }
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {"return_url": self.return_url, "cancel_url": self.cancel_url},
        }
        remote = self._post("/v2/checkout/orders", payload)
        approval = next((link["href"] for link in remote.get("links", []) if link.get("rel") == "approve"), None)
        logger.info("PayPal order %s created for %.2f %s", remote["id"], amount, self.currency)
        return {
            "success": True,
            "orderId": remote["id"],
            "amount": f"{amount:.2f}",
            "currency": self.currency,
            "approvalUrl": approval,
        }

    def confirm(self, details):
        order_id = details.get("orderId")
        if not order_id:
            raise ValidationError("Payment details are incomplete")
        token = self._access_token()
        try:
            result = self._post(f"/v2/checkout/orders/{order_id}/capture", token=token)
        except requests.HTTPError as exc:
            # 4xx on capture (e.g. 422 ORDER_NOT_APPROVED) means the customer never paid
            code = exc.response.status_code if exc.response is not None else None
            if code is None or not 400 <= code < 500:
                raise
            logger.warning("PayPal order %s capture rejected with HTTP %s", order_id, code)
            raise PaymentNotCompleted()
        status = result.get("status")
        if status != "COMPLETED":
            logger.warning("PayPal order %s capture returned status %s", order_id, status)
            raise PaymentNotCompleted()
        capture_id = None
        for unit in result.get("purchase_units", []):
            captures = unit.get("payments", {}).get("captures", [])
            if captures:
                capture_id = captures[0].get("id")
                break
        return PaymentReceipt(order_id, capture_id)


def build_gateway(settings) -> PaymentGateway:
    if settings.payment_gateway == "razorpay":
        return RazorpayGateway.from_settings(settings)
    if settings.payment_gateway == "paypal":
        return PayPalGateway.from_settings(settings)
    return CashOnDeliveryGateway()
