# Overview: Builds carrier payloads and drives shipment/return creation for paid orders.

from __future__ import annotations

from flask import current_app

from ..integrations import get_integrations
from ..models import Order
from ..money import quantize
from storefront.time_utils import to_carrier_date
from . import order_service


DEFAULT_PHONE = "0000000000"

# Used when products carry no dimensions of their own
DEFAULT_PACKAGE = {"length": 10, "breadth": 10, "height": 10, "weight": 0.5}


def _address_fields(prefix: str, address: dict, email: str) -> dict:
    return {
        f"{prefix}_customer_name": address.get("first_name", ""),
        f"{prefix}_last_name": address.get("last_name", ""),
        f"{prefix}_address": address.get("address_line_1", ""),
        f"{prefix}_address_2": address.get("address_line_2") or "",
        f"{prefix}_city": address.get("city", ""),
        f"{prefix}_pincode": address.get("postal_code", ""),
        f"{prefix}_state": address.get("state", ""),
        f"{prefix}_country": address.get("country", ""),
        f"{prefix}_email": email,
        f"{prefix}_phone": address.get("phone") or DEFAULT_PHONE,
    }


def _order_items(order: Order) -> list[dict]:
    return [
        {
            "name": item.product_name,
            "sku": item.product_sku,
            "units": item.quantity,
            "selling_price": float(item.unit_price),
            "discount": 0,
            "tax": 0,
            "hsn": 0,
        }
        for item in order.items
    ]


def build_shipment_payload(order: Order, email: str) -> dict:
    """Carrier order for a paid order. Amounts are sent as plain numbers."""
    config = current_app.config
    shipping = order.shipping_address or {}
    billing = order.billing_address or shipping
    sub_total = quantize(order.total_amount - order.tax_amount - order.shipping_amount)

    payload = {
        "order_id": order.order_number,
        "order_date": to_carrier_date(order.created_at),
        "pickup_location": config.get("SHIPPING_PICKUP_LOCATION", "Primary"),
        "channel_id": config.get("SHIPPING_CHANNEL_ID", ""),
        "comment": f"Order {order.order_number} - Payment confirmed",
        **_address_fields("billing", billing, email),
        "shipping_is_billing": shipping.get("address_line_1") == billing.get("address_line_1"),
        **_address_fields("shipping", shipping, email),
        "order_items": _order_items(order),
        "payment_method": "Prepaid",
        "shipping_charges": float(order.shipping_amount),
        "giftwrap_charges": 0,
        "transaction_charges": 0,
        "total_discount": float(order.discount_amount),
        "sub_total": float(sub_total),
        **DEFAULT_PACKAGE,
    }
    return payload


def build_return_payload(order: Order, email: str) -> dict:
    """Reverse pickup: customer's shipping address to the configured warehouse."""
    config = current_app.config
    pickup = order.shipping_address or {}
    drop = config.get("WAREHOUSE_ADDRESS") or {}

    payload = {
        "order_id": f"{order.order_number}-R",
        "order_date": to_carrier_date(None),
        "channel_id": config.get("SHIPPING_CHANNEL_ID", ""),
        "pickup_customer_name": pickup.get("first_name", ""),
        "pickup_last_name": pickup.get("last_name", ""),
        "pickup_address": pickup.get("address_line_1", ""),
        "pickup_address_2": pickup.get("address_line_2") or "",
        "pickup_city": pickup.get("city", ""),
        "pickup_state": pickup.get("state", ""),
        "pickup_country": pickup.get("country", ""),
        "pickup_pincode": pickup.get("postal_code", ""),
        "pickup_email": email,
        "pickup_phone": pickup.get("phone") or DEFAULT_PHONE,
        "drop_customer_name": drop.get("first_name", ""),
        "drop_last_name": drop.get("last_name", ""),
        "drop_address": drop.get("address_line_1", ""),
        "drop_address_2": drop.get("address_line_2") or "",
        "drop_city": drop.get("city", ""),
        "drop_state": drop.get("state", ""),
        "drop_country": drop.get("country", ""),
        "drop_pincode": drop.get("postal_code", ""),
        "drop_email": drop.get("email", ""),
        "drop_phone": drop.get("phone") or DEFAULT_PHONE,
        "order_items": _order_items(order),
        "payment_method": "Prepaid",
        "sub_total": float(quantize(order.total_amount - order.tax_amount - order.shipping_amount)),
        **DEFAULT_PACKAGE,
    }
    return payload


def _contact_email(order: Order) -> str:
    if order.user is not None:
        return order.user.email
    return (order.shipping_address or {}).get("email", "")


def create_shipment_for_order(order_id: str) -> Order:
    """
    Create the carrier order for a paid order and store its identifiers.

    Raises IntegrationError on carrier failure; callers on the payment path
    wrap this in best_effort.
    """
    order = order_service.get_order(order_id)
    if order.carrier_order_id:
        return order
    payload = build_shipment_payload(order, _contact_email(order))
    shipment = get_integrations().shipping.create_shipment_order(payload)
    current_app.logger.info("Carrier order %s created for %s", shipment.carrier_order_id, order.order_number)
    return order_service.record_shipment(order_id, shipment)


def cancel_carrier_shipment(order_id: str) -> None:
    order = order_service.get_order(order_id)
    if not order.tracking_number:
        return
    get_integrations().shipping.cancel_shipment([order.tracking_number])


def schedule_return_pickup(order_id: str) -> Order:
    order = order_service.get_order(order_id)
    if order.return_awb:
        return order
    payload = build_return_payload(order, _contact_email(order))
    result = get_integrations().shipping.create_return_order(payload)
    return order_service.update_return_status(
        order_id,
        "pickup_scheduled",
        return_awb=result.tracking_number or result.shipment_id,
        return_courier=result.courier_name,
    )
