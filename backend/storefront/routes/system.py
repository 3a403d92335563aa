# backend/storefront/routes/system.py
"""
System health endpoint.

Reports database reachability and which integration adapters are wired in,
for deployment debugging.
"""

import time

from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..integrations import get_integrations
from storefront.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def describe_integrations() -> dict:
    integrations = get_integrations()
    return {
        "payments": type(integrations.payments).__name__,
        "shipping": type(integrations.shipping).__name__,
        "notifier": type(integrations.notifier).__name__,
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: database reachable
    - 503: database unreachable
    """
    database_health = check_database_health()
    http_status = 200 if database_health["status"] == "healthy" else 503
    response = {
        "status": database_health["status"],
        "timestamp": utcnow().isoformat() + "Z",
        "checks": {"database": database_health},
        "integrations": describe_integrations(),
    }
    return response, http_status
