# backend/storefront/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_hours(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.environ.get(name)
    if not raw:
        return default
    return tuple(int(part) for part in raw.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///storefront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment gateway: "fake" for local development, "razorpay" in production
    PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "fake")
    PAYMENT_API_BASE = os.environ.get("PAYMENT_API_BASE", "https://api.razorpay.com/v1")
    PAYMENT_KEY_ID = os.environ.get("PAYMENT_KEY_ID", "rzp_test_key")
    PAYMENT_KEY_SECRET = os.environ.get("PAYMENT_KEY_SECRET", "dev-payment-secret")
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "dev-webhook-secret")

    # Shipping carrier: "fake" or "shiprocket"
    SHIPPING_CARRIER = os.environ.get("SHIPPING_CARRIER", "fake")
    SHIPPING_API_BASE = os.environ.get("SHIPPING_API_BASE", "https://apiv2.shiprocket.in/v1/external")
    SHIPPING_API_EMAIL = os.environ.get("SHIPPING_API_EMAIL", "")
    SHIPPING_API_PASSWORD = os.environ.get("SHIPPING_API_PASSWORD", "")
    SHIPPING_PICKUP_LOCATION = os.environ.get("SHIPPING_PICKUP_LOCATION", "Primary")
    SHIPPING_CHANNEL_ID = os.environ.get("SHIPPING_CHANNEL_ID", "")
    # Drop address for customer returns
    WAREHOUSE_ADDRESS = {
        "first_name": os.environ.get("WAREHOUSE_NAME", "Storefront Warehouse"),
        "last_name": "",
        "address_line_1": os.environ.get("WAREHOUSE_ADDRESS", ""),
        "city": os.environ.get("WAREHOUSE_CITY", ""),
        "state": os.environ.get("WAREHOUSE_STATE", ""),
        "country": os.environ.get("WAREHOUSE_COUNTRY", "India"),
        "postal_code": os.environ.get("WAREHOUSE_PINCODE", ""),
        "email": os.environ.get("WAREHOUSE_EMAIL", "warehouse@storefront.local"),
        "phone": os.environ.get("WAREHOUSE_PHONE", "0000000000"),
    }

    # Notifications: "log" writes to the app logger, "smtp" sends mail, "fake" records
    NOTIFIER = os.environ.get("NOTIFIER", "log")
    MAIL_SERVER = os.environ.get("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", "587"))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME", "")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD", "")
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", True)
    MAIL_SENDER = os.environ.get("MAIL_SENDER", "orders@storefront.local")
    ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@storefront.local")

    # Applies to every outbound HTTP/SMTP call
    OUTBOUND_TIMEOUT_SECONDS = float(os.environ.get("OUTBOUND_TIMEOUT_SECONDS", "10"))

    # Pricing rules
    CURRENCY = os.environ.get("CURRENCY", "INR")
    TAX_RATE = os.environ.get("TAX_RATE", "0.18")
    FREE_SHIPPING_THRESHOLD = os.environ.get("FREE_SHIPPING_THRESHOLD", "999")
    FLAT_SHIPPING_FEE = os.environ.get("FLAT_SHIPPING_FEE", "99")
    LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "5"))

    # Maintenance jobs (invoked by the operator's scheduler through the CLI)
    CART_ABANDONMENT_HOURS = int(os.environ.get("CART_ABANDONMENT_HOURS", "2"))
    CART_REMINDER_HOURS = _env_hours("CART_REMINDER_HOURS", (24, 72, 168))
    ABANDONMENT_RETENTION_DAYS = int(os.environ.get("ABANDONMENT_RETENTION_DAYS", "90"))
    INVENTORY_HISTORY_RETENTION_DAYS = int(os.environ.get("INVENTORY_HISTORY_RETENTION_DAYS", "365"))

    # Browser origins allowed to call the API
    CORS_ORIGINS = tuple(
        origin.strip()
        for origin in os.environ.get(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173,http://localhost:4173,http://127.0.0.1:4173",
        ).split(",")
        if origin.strip()
    )
