# Overview: Payment gateway port plus the Razorpay and in-memory adapters.

"""
Payment gateway adapters.

The order engine talks to the gateway through PaymentGateway only:
- create_order: register an amount (minor units) against our order number
- fetch_payment: read back a payment record for reconciliation
- refund_payment: refund a captured payment (used by cancellation)

Signature checks are implemented once on the base class because the scheme is
fixed: HMAC-SHA256(key_secret, "<gateway_order_id>|<gateway_payment_id>") for
the client callback and HMAC-SHA256(webhook_secret, raw_body) for webhooks.
Both compare with hmac.compare_digest.
"""

from __future__ import annotations

import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import httpx

from ..errors import IntegrationError


@dataclass(frozen=True)
class GatewayOrder:
    gateway_order_id: str
    amount: int
    currency: str
    receipt: str
    status: str = "created"


@dataclass(frozen=True)
class PaymentRecord:
    payment_id: str
    gateway_order_id: str | None
    amount: int
    currency: str
    status: str
    method: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.payment_id,
            "order_id": self.gateway_order_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "method": self.method,
        }


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: str | None = None
    status: str | None = None
    failure_reason: str | None = None


def compute_signature(secret: str, message: str | bytes) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    name = "abstract"

    def __init__(self, *, key_secret: str, webhook_secret: str):
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret

    @abstractmethod
    def create_order(self, amount: int, currency: str, receipt: str, notes: dict[str, str]) -> GatewayOrder:
        """Register a payable order with the gateway. amount is in minor units."""

    @abstractmethod
    def fetch_payment(self, payment_id: str) -> PaymentRecord:
        ...

    @abstractmethod
    def refund_payment(self, payment_id: str, amount: int, notes: dict[str, str] | None = None) -> RefundResult:
        ...

    def sign_payment(self, gateway_order_id: str, gateway_payment_id: str) -> str:
        return compute_signature(self._key_secret, f"{gateway_order_id}|{gateway_payment_id}")

    def verify_payment_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        if not (gateway_order_id and gateway_payment_id and signature):
            return False
        expected = self.sign_payment(gateway_order_id, gateway_payment_id)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    def sign_webhook(self, raw_body: bytes) -> str:
        return compute_signature(self._webhook_secret, raw_body)

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        expected = self.sign_webhook(raw_body)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


class RazorpayGateway(PaymentGateway):
    """Razorpay REST adapter (basic auth with key id/secret)."""

    name = "razorpay"

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        super().__init__(key_secret=key_secret, webhook_secret=webhook_secret)
        self._client = httpx.Client(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise IntegrationError(f"Payment gateway unreachable: {exc}", provider=self.name) from exc

        if response.status_code >= 400:
            try:
                description = response.json().get("error", {}).get("description")
            except ValueError:
                description = None
            raise IntegrationError(
                description or f"Payment gateway returned HTTP {response.status_code}",
                provider=self.name,
                details={"status_code": response.status_code},
            )
        return response.json()

    def create_order(self, amount: int, currency: str, receipt: str, notes: dict[str, str]) -> GatewayOrder:
        data = self._request(
            "POST",
            "/orders",
            json={"amount": amount, "currency": currency, "receipt": receipt, "notes": notes},
        )
        return GatewayOrder(
            gateway_order_id=data["id"],
            amount=int(data.get("amount", amount)),
            currency=data.get("currency", currency),
            receipt=data.get("receipt", receipt),
            status=data.get("status", "created"),
        )

    def fetch_payment(self, payment_id: str) -> PaymentRecord:
        data = self._request("GET", f"/payments/{payment_id}")
        return PaymentRecord(
            payment_id=data["id"],
            gateway_order_id=data.get("order_id"),
            amount=int(data.get("amount", 0)),
            currency=data.get("currency", ""),
            status=data.get("status", "unknown"),
            method=data.get("method"),
            raw=data,
        )

    def refund_payment(self, payment_id: str, amount: int, notes: dict[str, str] | None = None) -> RefundResult:
        try:
            data = self._request(
                "POST",
                f"/payments/{payment_id}/refund",
                json={"amount": amount, "notes": notes or {}},
            )
        except IntegrationError as exc:
            return RefundResult(success=False, status="failed", failure_reason=exc.message)
        return RefundResult(success=True, refund_id=data.get("id"), status=data.get("status", "processed"))


class FakePaymentGateway(PaymentGateway):
    """
    In-memory gateway for development and tests.

    Records every call in ``calls``; set ``fail_on`` to a set of method names
    ("create_order", "fetch_payment", "refund_payment") to make them fail.
    """

    name = "fake"

    def __init__(self, *, key_secret: str = "test-key-secret", webhook_secret: str = "test-webhook-secret"):
        super().__init__(key_secret=key_secret, webhook_secret=webhook_secret)
        self.calls: list[dict] = []
        self.fail_on: set[str] = set()
        self.payments: dict[str, PaymentRecord] = {}

    def _maybe_fail(self, method: str) -> None:
        if method in self.fail_on:
            raise IntegrationError(f"Fake gateway configured to fail {method}", provider=self.name)

    def create_order(self, amount: int, currency: str, receipt: str, notes: dict[str, str]) -> GatewayOrder:
        self.calls.append({"method": "create_order", "amount": amount, "currency": currency,
                           "receipt": receipt, "notes": dict(notes)})
        self._maybe_fail("create_order")
        return GatewayOrder(
            gateway_order_id=f"order_fake_{uuid4().hex[:14]}",
            amount=amount,
            currency=currency,
            receipt=receipt,
        )

    def capture(self, gateway_order_id: str, amount: int, currency: str = "INR") -> tuple[str, str]:
        """Simulate a customer paying: returns (payment_id, client signature)."""
        payment_id = f"pay_fake_{uuid4().hex[:14]}"
        self.payments[payment_id] = PaymentRecord(
            payment_id=payment_id,
            gateway_order_id=gateway_order_id,
            amount=amount,
            currency=currency,
            status="captured",
            method="card",
        )
        return payment_id, self.sign_payment(gateway_order_id, payment_id)

    def fetch_payment(self, payment_id: str) -> PaymentRecord:
        self.calls.append({"method": "fetch_payment", "payment_id": payment_id})
        self._maybe_fail("fetch_payment")
        record = self.payments.get(payment_id)
        if record is None:
            raise IntegrationError("The id provided does not exist", provider=self.name)
        return record

    def refund_payment(self, payment_id: str, amount: int, notes: dict[str, str] | None = None) -> RefundResult:
        self.calls.append({"method": "refund_payment", "payment_id": payment_id, "amount": amount})
        if "refund_payment" in self.fail_on:
            return RefundResult(success=False, status="failed", failure_reason="Refund declined")
        return RefundResult(success=True, refund_id=f"rfnd_fake_{uuid4().hex[:14]}", status="processed")
