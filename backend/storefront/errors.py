# Overview: Error taxonomy shared by services, routes, and CLI commands.

"""
Storefront error taxonomy.

Every domain failure raised by the service layer is a StorefrontError subclass.
Routes translate them into the JSON envelope using ``http_status``; anything
that is not a StorefrontError is logged and reported as a generic 500.

- ValidationError:   malformed or out-of-range client input. No side effects.
- NotFoundError:     referenced entity absent. No mutation attempted.
- ForbiddenError:    caller is authenticated but lacks the required role.
- ConflictError:     state precondition violated (already paid, coupon limit
                     reached, insufficient stock, illegal status transition).
- IntegrationError:  payment/shipping/email provider failure.
- TransactionError:  database failure mid-transaction; the transaction was
                     rolled back and no partial effect is visible.
"""

from __future__ import annotations

from typing import Any


class StorefrontError(Exception):
    http_status = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(StorefrontError, ValueError):
    """400-level input problem."""
    http_status = 400


class NotFoundError(StorefrontError):
    http_status = 404


class ForbiddenError(StorefrontError):
    http_status = 403


class ConflictError(StorefrontError):
    """409-level business rule conflict (e.g., coupon limit reached)."""
    http_status = 409


class IntegrationError(StorefrontError):
    """A third-party provider call failed or answered with an error."""
    http_status = 502

    def __init__(self, message: str, *, provider: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
        self.provider = provider


class PaymentSignatureError(IntegrationError):
    http_status = 400

    def __init__(self, message: str = "Invalid payment signature"):
        super().__init__(message, provider="payment")


class TransactionError(StorefrontError):
    http_status = 500
