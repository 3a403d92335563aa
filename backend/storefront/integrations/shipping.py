# Overview: Shipping carrier port plus the Shiprocket and in-memory adapters.

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

import httpx

from ..errors import IntegrationError
from ..time_utils import utcnow


@dataclass(frozen=True)
class ShipmentResult:
    carrier_order_id: str
    shipment_id: str | None = None
    tracking_number: str | None = None
    courier_name: str | None = None
    status: str | None = None


class ShippingCarrier(ABC):
    """Abstract carrier interface. Payloads are built by checkout_service.build_shipment_payload."""

    name = "abstract"

    @abstractmethod
    def create_shipment_order(self, payload: dict) -> ShipmentResult:
        ...

    @abstractmethod
    def cancel_shipment(self, awbs: list[str]) -> None:
        ...

    @abstractmethod
    def create_return_order(self, payload: dict) -> ShipmentResult:
        ...


class ShiprocketCarrier(ShippingCarrier):
    """
    Shiprocket REST adapter.

    Logs in with the API user's email/password and reuses the bearer token
    until shortly before its 10-day expiry.
    """

    name = "shiprocket"
    TOKEN_LIFETIME = timedelta(days=9)

    def __init__(
        self,
        *,
        email: str,
        password: str,
        base_url: str = "https://apiv2.shiprocket.in/v1/external",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._email = email
        self._password = password
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._token: str | None = None
        self._token_expires_at: datetime | None = None

    def _authenticate(self) -> str:
        if self._token and self._token_expires_at and self._token_expires_at > utcnow():
            return self._token
        try:
            response = self._client.post("/auth/login", json={"email": self._email, "password": self._password})
        except httpx.HTTPError as exc:
            raise IntegrationError(f"Carrier unreachable: {exc}", provider=self.name) from exc
        token = response.json().get("token") if response.status_code < 400 else None
        if not token:
            raise IntegrationError("Failed to authenticate with carrier", provider=self.name)
        self._token = token
        self._token_expires_at = utcnow() + self.TOKEN_LIFETIME
        return token

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        token = self._authenticate()
        try:
            response = self._client.request(
                method,
                path,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise IntegrationError(f"Carrier unreachable: {exc}", provider=self.name) from exc
        if response.status_code == 401:
            self._token = None
        if response.status_code >= 400:
            raise IntegrationError(
                f"Carrier returned HTTP {response.status_code}",
                provider=self.name,
                details={"status_code": response.status_code, "body": response.text[:500]},
            )
        return response.json()

    @staticmethod
    def _result(data: dict) -> ShipmentResult:
        if not data.get("order_id"):
            raise IntegrationError("Carrier response missing order_id", provider="shiprocket")
        return ShipmentResult(
            carrier_order_id=str(data["order_id"]),
            shipment_id=str(data["shipment_id"]) if data.get("shipment_id") else None,
            tracking_number=data.get("awb_code") or None,
            courier_name=data.get("courier_name") or None,
            status=data.get("status"),
        )

    def create_shipment_order(self, payload: dict) -> ShipmentResult:
        return self._result(self._request("POST", "/orders/create/adhoc", payload))

    def cancel_shipment(self, awbs: list[str]) -> None:
        self._request("POST", "/orders/cancel/shipment/awbs", {"awbs": awbs})

    def create_return_order(self, payload: dict) -> ShipmentResult:
        return self._result(self._request("POST", "/orders/return", payload))


class FakeCarrier(ShippingCarrier):
    """Records payloads; set ``fail_on`` to make a method raise IntegrationError."""

    name = "fake"

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.fail_on: set[str] = set()

    def _record(self, method: str, **data) -> None:
        self.calls.append({"method": method, **data})
        if method in self.fail_on:
            raise IntegrationError(f"Fake carrier configured to fail {method}", provider=self.name)

    def create_shipment_order(self, payload: dict) -> ShipmentResult:
        self._record("create_shipment_order", payload=payload)
        suffix = uuid4().hex[:10]
        return ShipmentResult(
            carrier_order_id=f"SR{suffix}",
            shipment_id=f"SH{suffix}",
            tracking_number=f"AWB{suffix.upper()}",
            courier_name="Fake Express",
            status="NEW",
        )

    def cancel_shipment(self, awbs: list[str]) -> None:
        self._record("cancel_shipment", awbs=list(awbs))

    def create_return_order(self, payload: dict) -> ShipmentResult:
        self._record("create_return_order", payload=payload)
        suffix = uuid4().hex[:10]
        return ShipmentResult(
            carrier_order_id=f"RT{suffix}",
            shipment_id=f"RS{suffix}",
            tracking_number=f"RAWB{suffix.upper()}",
            courier_name="Fake Express",
            status="RETURN PENDING",
        )
