import logging
import os
from typing import List, Literal, Optional

from pydantic import BaseModel

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime configuration, read once from the environment at startup."""

    jwt_secret: str = "dev-secret-change-me"
    access_token_expire_minutes: int = 60 * 24 * 7
    debug: bool = False
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    payment_gateway: Literal["none", "razorpay", "paypal"] = "none"
    payment_timeout: float = 30.0
    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_currency: str = "INR"
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    paypal_currency: str = "USD"
    frontend_url: str = "http://localhost:5173"

    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    default_country_code: str = "+91"

    email_host: str = "smtp.gmail.com"
    email_port: int = 587
    email_user: Optional[str] = None
    email_password: Optional[str] = None
    email_from: Optional[str] = None

    admin_email: str = "admin@shopease.in"
    admin_password: str = "admin123"
    admin_name: str = "Admin"

    currency_symbol: str = "₹"
    atomic_line_items: bool = True
    enforce_status_flow: bool = False

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        origins = [o.strip().rstrip("/") for o in env.get("FRONTEND_URL", "").split(",") if o.strip()]
        values = {
            "jwt_secret": env.get("JWT_SECRET"),
            "access_token_expire_minutes": env.get("ACCESS_TOKEN_EXPIRE_MINUTES"),
            "debug": _flag(env.get("DEBUG")),
            "cors_origins": origins or ["*"],
            "log_level": env.get("LOG_LEVEL"),
            "payment_gateway": (env.get("PAYMENT_GATEWAY") or "none").lower(),
            "payment_timeout": env.get("PAYMENT_TIMEOUT"),
            "razorpay_key_id": env.get("RAZORPAY_KEY_ID"),
            "razorpay_key_secret": env.get("RAZORPAY_KEY_SECRET"),
            "razorpay_currency": env.get("RAZORPAY_CURRENCY"),
            "paypal_client_id": env.get("PAYPAL_CLIENT_ID"),
            "paypal_client_secret": env.get("PAYPAL_CLIENT_SECRET"),
            "paypal_base_url": env.get("PAYPAL_BASE_URL"),
            "paypal_currency": env.get("PAYPAL_CURRENCY"),
            "frontend_url": origins[0] if origins else None,
            "twilio_account_sid": env.get("TWILIO_ACCOUNT_SID"),
            "twilio_auth_token": env.get("TWILIO_AUTH_TOKEN"),
            "twilio_phone_number": env.get("TWILIO_PHONE_NUMBER"),
            "default_country_code": env.get("DEFAULT_COUNTRY_CODE"),
            "email_host": env.get("EMAIL_HOST"),
            "email_port": env.get("EMAIL_PORT"),
            "email_user": env.get("EMAIL_USER"),
            "email_password": env.get("EMAIL_PASSWORD"),
            "email_from": env.get("EMAIL_FROM") or env.get("EMAIL_USER"),
            "admin_email": env.get("ADMIN_EMAIL"),
            "admin_password": env.get("ADMIN_PASSWORD"),
            "admin_name": env.get("ADMIN_NAME"),
            "currency_symbol": env.get("CURRENCY_SYMBOL"),
            "atomic_line_items": _flag(env.get("ATOMIC_LINE_ITEMS"), default=True),
            "enforce_status_flow": _flag(env.get("ENFORCE_STATUS_FLOW")),
        }
        # Unset variables fall back to the field defaults
        return cls(**{k: v for k, v in values.items() if v is not None})


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
