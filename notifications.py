"""
Customer and admin notifications.

Customer messages go out over SMS (twilio) and email (SMTP). Senders never
raise: every attempt returns True/False and failures are only logged, so an
unreachable provider can never fail or roll back an order.

Admin notifications are records in the ``notification`` collection, one per
admin account for every triggering event.
"""
import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Callable, Dict, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from database import create_document
from schemas import Notification

logger = logging.getLogger(__name__)

BRAND = "ShopEase"

STATUS_SMS_PHRASES = {
    "pending": "is pending confirmation",
    "confirmed": "has been confirmed",
    "packed": "has been packed and is ready for dispatch",
    "delivered": "has been delivered",
    "cancelled": "has been cancelled",
}
DEFAULT_SMS_PHRASE = "status has been updated"

STATUS_EMAIL_COPY = {
    "pending": ("Order Pending Confirmation", "Your order is pending confirmation. We will process it shortly."),
    "confirmed": ("Order Confirmed", "Your order has been confirmed and is being prepared."),
    "packed": ("Order Packed", "Your order has been packed and is ready for dispatch!"),
    "delivered": ("Order Delivered", "Your order has been delivered successfully. Thank you for shopping with us!"),
    "cancelled": ("Order Cancelled", "Your order has been cancelled. If you have any questions, please contact us."),
}
DEFAULT_EMAIL_COPY = ("Order Status Updated", "Your order status has been updated.")

# Twilio error codes worth a specific hint in the logs
TWILIO_HINTS = {
    21608: "number is not verified on this trial account",
    21211: "invalid phone number",
    21408: "sender number is not owned by this account",
}


def short_order_id(order_id: str) -> str:
    return str(order_id)[-8:].upper()


class SmsSender:
    def __init__(self, client=None, from_number: Optional[str] = None, default_country_code: str = "+91"):
        self.client = client
        self.from_number = from_number
        self.default_country_code = default_country_code

    @classmethod
    def from_settings(cls, settings) -> "SmsSender":
        client = None
        if settings.twilio_account_sid and settings.twilio_auth_token:
            client = TwilioClient(settings.twilio_account_sid, settings.twilio_auth_token)
            logger.info("Twilio client initialized")
        else:
            logger.warning("Twilio credentials not configured; SMS is disabled")
        return cls(client, settings.twilio_phone_number, settings.default_country_code)

    def format_phone(self, phone: str) -> str:
        phone = phone.strip()
        if phone.startswith("+"):
            return phone
        if len(phone) == 10:
            return self.default_country_code + phone
        return "+" + phone

    def send(self, phone: str, body: str) -> bool:
        if self.client is None:
            logger.info("SMS client not available, skipping SMS")
            return False
        if not self.from_number:
            logger.error("TWILIO_PHONE_NUMBER not configured")
            return False
        to = self.format_phone(phone)
        try:
            result = self.client.messages.create(body=body, from_=self.from_number, to=to)
        except TwilioRestException as exc:
            hint = TWILIO_HINTS.get(exc.code)
            logger.error("SMS to %s failed (code %s%s): %s", to, exc.code, f", {hint}" if hint else "", exc.msg)
            return False
        except Exception:
            logger.exception("SMS to %s failed", to)
            return False
        logger.info("SMS sent to %s, sid=%s", to, getattr(result, "sid", None))
        return True


class EmailSender:
    def __init__(self, host: str, port: int, user: Optional[str], password: Optional[str],
                 sender: Optional[str] = None, smtp_factory: Optional[Callable] = None, timeout: float = 10):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout
        if smtp_factory is None:
            smtp_factory = smtplib.SMTP_SSL if port == 465 else smtplib.SMTP
        self.smtp_factory = smtp_factory

    @classmethod
    def from_settings(cls, settings) -> "EmailSender":
        if not (settings.email_user and settings.email_password):
            logger.warning("Email credentials not configured; email is disabled")
        return cls(settings.email_host, settings.email_port, settings.email_user,
                   settings.email_password, settings.email_from)

    @property
    def enabled(self) -> bool:
        return bool(self.user and self.password)

    def send(self, to: str, subject: str, text: str, html_body: Optional[str] = None) -> bool:
        if not self.enabled:
            logger.info("Email transport not available, skipping email to %s", to)
            return False
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{BRAND} <{self.sender}>"
        msg["To"] = to
        msg.set_content(text)
        if html_body:
            msg.add_alternative(html_body, subtype="html")
        try:
            with self.smtp_factory(self.host, self.port, timeout=self.timeout) as smtp:
                if self.port != 465:
                    smtp.starttls()
                smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email to %s failed: %s", to, exc)
            return False
        logger.info("Email sent to %s: %s", to, subject)
        return True


def _render_items(order: Dict[str, Any], symbol: str) -> str:
    lines = []
    for item in order.get("products", []):
        line_total = item["price"] * item["quantity"]
        lines.append(
            f"- {item['name']}: {item['quantity']} {item.get('unit') or 'piece'} x "
            f"{symbol}{item['price']} = {symbol}{line_total:.2f}"
        )
    return "\n".join(lines)


def _render_address(address: Optional[Dict[str, Any]]) -> str:
    if not address:
        return ""
    parts = [address.get("fullName"), address.get("addressLine1"), address.get("addressLine2"),
             f"{address.get('city')}, {address.get('state')} {address.get('pincode')}",
             address.get("country") or "India", f"Phone: {address.get('phone')}"]
    return "\n".join(p for p in parts if p)


def _html(greeting: str, paragraphs, items: str, address: str) -> str:
    body = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    if items:
        body += "<h3>Items</h3><pre>" + html.escape(items) + "</pre>"
    if address:
        body += "<h3>Shipping address</h3><pre>" + html.escape(address) + "</pre>"
    return (
        f"<html><body><h1>{BRAND}</h1><h2>{html.escape(greeting)}</h2>{body}"
        f"<p>Thank you for shopping with {BRAND}!</p>"
        "<p><small>This is an automated email. Please do not reply to this message.</small></p>"
        "</body></html>"
    )


class NotificationDispatcher:
    """Sends the customer-facing messages for order lifecycle events."""

    def __init__(self, sms: SmsSender, email: EmailSender, currency_symbol: str = "₹"):
        self.sms = sms
        self.email = email
        self.currency_symbol = currency_symbol

    @classmethod
    def from_settings(cls, settings) -> "NotificationDispatcher":
        return cls(SmsSender.from_settings(settings), EmailSender.from_settings(settings), settings.currency_symbol)

    def order_placed(self, order: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Optional[bool]]:
        order_id = str(order["id"])
        address = order.get("shippingAddress") or {}
        name = address.get("fullName") or user.get("name") or "Customer"
        total = f"{self.currency_symbol}{order['totalAmount']:.2f}"
        short_id = short_order_id(order_id)
        result: Dict[str, Optional[bool]] = {"sms": None, "email": None}

        if address.get("phone"):
            body = (f"Hello {name}! Your order #{short_id} of {total} has been placed successfully. "
                    f"We'll keep you updated! Thank you for shopping with {BRAND}!")
            result["sms"] = self.sms.send(address["phone"], body)
        else:
            logger.warning("No phone number in shipping address for order %s", order_id)

        if user.get("email"):
            items = _render_items(order, self.currency_symbol)
            addr = _render_address(address)
            method = order.get("paymentMethod", "").replace("_", " ").title()
            paragraphs = ["Thank you for your order! We're excited to process it for you.",
                          f"Order ID: #{short_id}", f"Total: {total}", f"Payment method: {method}"]
            text = "\n\n".join([f"Hello {name}!"] + paragraphs + [items, addr])
            result["email"] = self.email.send(
                user["email"], f"Order Confirmation #{short_id} - {BRAND}", text,
                _html(f"Hello {name}!", paragraphs, items, addr),
            )
        else:
            logger.warning("No email for user %s", user.get("id"))

        logger.info("Order placed notifications for %s: %s", order_id, result)
        return result

    def status_changed(self, order: Dict[str, Any], user: Optional[Dict[str, Any]]) -> Dict[str, Optional[bool]]:
        order_id = str(order["id"])
        status = order["status"]
        address = order.get("shippingAddress") or {}
        user = user or {}
        name = user.get("name") or address.get("fullName") or "Customer"
        short_id = short_order_id(order_id)
        result: Dict[str, Optional[bool]] = {"sms": None, "email": None}

        if address.get("phone"):
            phrase = STATUS_SMS_PHRASES.get(status, DEFAULT_SMS_PHRASE)
            body = f"Hello {name}! Your order #{short_id} {phrase}. Thank you for shopping with {BRAND}!"
            result["sms"] = self.sms.send(address["phone"], body)
        else:
            logger.warning("No phone number found for order %s", order_id)

        if user.get("email"):
            title, message = STATUS_EMAIL_COPY.get(status, DEFAULT_EMAIL_COPY)
            items = _render_items(order, self.currency_symbol)
            paragraphs = [message, f"Order ID: #{short_id}", f"Status: {status.upper()}",
                          f"Total: {self.currency_symbol}{order['totalAmount']:.2f}",
                          "You can track your order status anytime from your account dashboard."]
            text = "\n\n".join([f"Hello {name}!"] + paragraphs + [items])
            result["email"] = self.email.send(
                user["email"], f"{title} #{short_id} - {BRAND}", text,
                _html(f"Hello {name}!", paragraphs, items, ""),
            )
        else:
            logger.warning("No email found for order %s", order_id)

        logger.info("Status notifications for %s (%s): %s", order_id, status, result)
        return result


def notify_admins(db, type_: str, title: str, message: str,
                  order_id: Optional[str] = None, user_id: Optional[str] = None) -> int:
    """Store one notification per admin account. Returns how many were created."""
    count = 0
    for admin in db["user"].find({"role": "admin"}, {"_id": 1}):
        note = Notification(type=type_, title=title, message=message, order_id=order_id,
                            user_id=user_id, recipient_id=str(admin["_id"]))
        create_document(db, "notification", note)
        count += 1
    return count
