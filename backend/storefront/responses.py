# Overview: JSON response envelope shared by every blueprint.

from flask import jsonify

from .errors import StorefrontError


def success(data=None, message: str = "OK", status: int = 200):
    return jsonify({"success": True, "message": message, "data": data}), status


def error(message: str, status: int = 400, details=None):
    body = {"success": False, "message": message, "data": None}
    if details:
        body["details"] = details
    return jsonify(body), status


def from_exception(exc: StorefrontError):
    """Map a domain error onto its HTTP status."""
    return error(exc.message, exc.http_status, exc.details)
