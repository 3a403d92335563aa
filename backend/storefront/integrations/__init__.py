# Overview: Builds the third-party adapters once per app and exposes them to services.

from __future__ import annotations

from dataclasses import dataclass

from flask import Flask, current_app

from .notifications import LogNotifier, Notifier, RecordingNotifier, SmtpNotifier
from .payments import FakePaymentGateway, PaymentGateway, RazorpayGateway
from .shipping import FakeCarrier, ShippingCarrier, ShiprocketCarrier

EXTENSION_KEY = "storefront.integrations"


@dataclass
class Integrations:
    payments: PaymentGateway
    shipping: ShippingCarrier
    notifier: Notifier


def _build_gateway(config) -> PaymentGateway:
    kind = config["PAYMENT_GATEWAY"]
    if kind == "razorpay":
        return RazorpayGateway(
            key_id=config["PAYMENT_KEY_ID"],
            key_secret=config["PAYMENT_KEY_SECRET"],
            webhook_secret=config["PAYMENT_WEBHOOK_SECRET"],
            base_url=config["PAYMENT_API_BASE"],
            timeout=config["OUTBOUND_TIMEOUT_SECONDS"],
        )
    if kind == "fake":
        return FakePaymentGateway(
            key_secret=config["PAYMENT_KEY_SECRET"],
            webhook_secret=config["PAYMENT_WEBHOOK_SECRET"],
        )
    raise ValueError(f"Unknown PAYMENT_GATEWAY: {kind}")


def _build_carrier(config) -> ShippingCarrier:
    kind = config["SHIPPING_CARRIER"]
    if kind == "shiprocket":
        return ShiprocketCarrier(
            email=config["SHIPPING_API_EMAIL"],
            password=config["SHIPPING_API_PASSWORD"],
            base_url=config["SHIPPING_API_BASE"],
            timeout=config["OUTBOUND_TIMEOUT_SECONDS"],
        )
    if kind == "fake":
        return FakeCarrier()
    raise ValueError(f"Unknown SHIPPING_CARRIER: {kind}")


def _build_notifier(app: Flask) -> Notifier:
    config = app.config
    kind = config["NOTIFIER"]
    if kind == "smtp":
        return SmtpNotifier(
            admin_email=config["ADMIN_EMAIL"],
            host=config["MAIL_SERVER"],
            port=config["MAIL_PORT"],
            sender=config["MAIL_SENDER"],
            username=config["MAIL_USERNAME"],
            password=config["MAIL_PASSWORD"],
            use_tls=config["MAIL_USE_TLS"],
            timeout=config["OUTBOUND_TIMEOUT_SECONDS"],
        )
    if kind == "log":
        return LogNotifier(admin_email=config["ADMIN_EMAIL"], logger=app.logger)
    if kind == "fake":
        return RecordingNotifier(admin_email=config["ADMIN_EMAIL"])
    raise ValueError(f"Unknown NOTIFIER: {kind}")


def init_integrations(app: Flask) -> Integrations:
    integrations = Integrations(
        payments=_build_gateway(app.config),
        shipping=_build_carrier(app.config),
        notifier=_build_notifier(app),
    )
    app.extensions[EXTENSION_KEY] = integrations
    return integrations


def get_integrations() -> Integrations:
    return current_app.extensions[EXTENSION_KEY]


__all__ = [
    "Integrations", "init_integrations", "get_integrations",
    "PaymentGateway", "RazorpayGateway", "FakePaymentGateway",
    "ShippingCarrier", "ShiprocketCarrier", "FakeCarrier",
    "Notifier", "LogNotifier", "SmtpNotifier", "RecordingNotifier",
]
