"""
Infrastructure endpoints that sit outside the business domain.
"""

import logging

from django.core.cache import cache
from django.db import DatabaseError, connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Liveness/readiness probe.

    Reports database and cache connectivity. Only the database decides the
    HTTP status; a missing cache (used for order locks) is reported as
    degraded so operators notice before money-moving requests start failing.

    Returns:
        200 with {"status": "healthy" | "degraded", ...}
        503 with {"status": "unhealthy", ...} when the database is down
    """
    payload = {"status": "healthy", "database": "unknown", "cache": "unknown"}

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        payload["database"] = "connected"
    except DatabaseError:
        logger.exception("Health check: database unreachable")
        payload["database"] = "disconnected"
        payload["status"] = "unhealthy"

    try:
        cache.set("health_check", "ok", timeout=1)
        payload["cache"] = "connected" if cache.get("health_check") == "ok" else "disconnected"
    except Exception:
        logger.warning("Health check: cache unreachable", exc_info=True)
        payload["cache"] = "disconnected"

    if payload["cache"] != "connected" and payload["status"] == "healthy":
        payload["status"] = "degraded"

    return JsonResponse(payload, status=503 if payload["status"] == "unhealthy" else 200)
