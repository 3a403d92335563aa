# Overview: Customer and operator notifications (order mail, shipping, low stock, cart reminders).

"""
Notification adapters.

Every call site treats notifications as fire-and-forget: services wrap them in
concurrency.best_effort after their transaction commits. Adapters therefore
raise freely on delivery failure and never touch the database.

Message bodies are plain text; templated rendering is owned elsewhere.
"""

from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage

from ..money import money_str


@dataclass(frozen=True)
class Message:
    to: str
    subject: str
    body: str
    kind: str


def order_confirmation_message(order, user) -> Message:
    lines = [
        f"Hi {user.name},",
        "",
        f"Thanks for your order {order.order_number}. Payment has been received.",
        "",
    ]
    for item in order.items:
        lines.append(f"  {item.quantity} x {item.product_name} @ {money_str(item.unit_price)}")
    lines += [
        "",
        f"Subtotal: {money_str(order.subtotal)}",
        f"Discount: {money_str(order.discount_amount)}",
        f"Tax: {money_str(order.tax_amount)}",
        f"Shipping: {money_str(order.shipping_amount)}",
        f"Total: {money_str(order.total_amount)} {order.currency}",
    ]
    return Message(user.email, f"Order confirmed - {order.order_number}", "\n".join(lines), "order_confirmation")


def shipping_message(order, user) -> Message:
    tracking = order.tracking_number or "will be shared soon"
    body = (
        f"Hi {user.name},\n\n"
        f"Your order {order.order_number} has shipped.\n"
        f"Courier: {order.courier_name or 'our delivery partner'}\n"
        f"Tracking number: {tracking}\n"
    )
    return Message(user.email, f"Your order {order.order_number} has shipped", body, "shipping_notification")


def cancellation_message(order, user) -> Message:
    body = (
        f"Hi {user.name},\n\n"
        f"Your order {order.order_number} has been cancelled.\n"
        f"Reason: {order.cancellation_reason or 'not specified'}\n"
    )
    if order.payment_status in ("paid", "refunded"):
        body += f"A refund of {money_str(order.total_amount)} {order.currency} has been initiated.\n"
    return Message(user.email, f"Order {order.order_number} cancelled", body, "cancellation_notice")


def low_stock_message(product_name: str, current_stock: int, admin_email: str) -> Message:
    body = (
        f"Low stock alert\n\n"
        f"Product: {product_name}\n"
        f"Units remaining: {current_stock}\n\n"
        f"Please restock soon to avoid running out."
    )
    return Message(admin_email, f"Low stock alert: {product_name}", body, "low_stock_alert")


def cart_reminder_message(user, items: list[dict], reminder_number: int) -> Message:
    subjects = {
        1: "You left something in your cart",
        2: "Your cart is still waiting",
        3: "Last chance to complete your order",
    }
    lines = [f"Hi {user.name},", "", "These items are still in your cart:", ""]
    for item in items:
        lines.append(f"  {item['quantity']} x {item['product_name']}")
    return Message(user.email, subjects.get(reminder_number, subjects[3]), "\n".join(lines), "cart_reminder")


class Notifier(ABC):
    """Abstract notification channel. Subclasses only implement deliver()."""

    name = "abstract"

    def __init__(self, *, admin_email: str):
        self.admin_email = admin_email

    @abstractmethod
    def deliver(self, message: Message) -> None:
        ...

    def send_order_confirmation(self, order, user) -> None:
        self.deliver(order_confirmation_message(order, user))

    def send_shipping_notification(self, order, user) -> None:
        self.deliver(shipping_message(order, user))

    def send_cancellation_notice(self, order, user) -> None:
        self.deliver(cancellation_message(order, user))

    def send_low_stock_alert(self, product_name: str, current_stock: int, admin_email: str | None = None) -> None:
        self.deliver(low_stock_message(product_name, current_stock, admin_email or self.admin_email))

    def send_cart_reminder(self, user, items: list[dict], reminder_number: int) -> None:
        self.deliver(cart_reminder_message(user, items, reminder_number))


class LogNotifier(Notifier):
    """Development channel: writes each message to the application log."""

    name = "log"

    def __init__(self, *, admin_email: str, logger: logging.Logger | None = None):
        super().__init__(admin_email=admin_email)
        self._logger = logger or logging.getLogger("storefront.notifications")

    def deliver(self, message: Message) -> None:
        self._logger.info("[%s] to=%s subject=%r", message.kind, message.to, message.subject)


class SmtpNotifier(Notifier):
    name = "smtp"

    def __init__(
        self,
        *,
        admin_email: str,
        host: str,
        port: int,
        sender: str,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        super().__init__(admin_email=admin_email)
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def deliver(self, message: Message) -> None:
        email = EmailMessage()
        email["From"] = self.sender
        email["To"] = message.to
        email["Subject"] = message.subject
        email.set_content(message.body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(email)


class RecordingNotifier(Notifier):
    """Test channel: keeps messages in ``sent``; ``fail`` makes every delivery raise."""

    name = "fake"

    def __init__(self, *, admin_email: str = "admin@storefront.local"):
        super().__init__(admin_email=admin_email)
        self.sent: list[Message] = []
        self.fail = False

    def deliver(self, message: Message) -> None:
        if self.fail:
            raise ConnectionError("Recording notifier configured to fail")
        self.sent.append(message)

    def kinds(self) -> list[str]:
        return [m.kind for m in self.sent]
