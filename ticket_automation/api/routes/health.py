from __future__ import annotations

from datetime import datetime, timezone
from time import monotonic
from typing import Any

from fastapi import APIRouter, Depends

from ticket_automation.api.dependencies.services import get_servicenow_client
from ticket_automation.core.config import get_settings
from ticket_automation.core.database import db
from ticket_automation.core.logging import log_error
from ticket_automation.services.servicenow import ServiceNowClient

router = APIRouter(prefix="/health", tags=["Health"])

_STARTED_AT = monotonic()


def _base_payload() -> dict[str, Any]:
    settings = get_settings()
    return {
        "success": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(monotonic() - _STARTED_AT, 3),
        "environment": settings.environment,
        "version": settings.version,
    }


@router.get("")
async def health() -> dict[str, Any]:
    payload = _base_payload()
    payload["message"] = "Service is healthy"
    return payload


@router.get("/detailed")
async def detailed_health(
    client: ServiceNowClient | None = Depends(get_servicenow_client),
) -> dict[str, Any]:
    payload = _base_payload()
    checks: dict[str, Any] = {}

    started = monotonic()
    try:
        if not db.is_connected():
            await db.connect()
        await db.fetch_one("SELECT 1 AS ok")
    except Exception as exc:
        log_error("Database health check failed", error=str(exc))
        checks["database"] = {
            "status": "unhealthy",
            "message": f"Database connection failed: {exc}",
            "response_time_ms": 0,
        }
        payload["success"] = False
    else:
        checks["database"] = {
            "status": "healthy",
            "message": "Database connection successful",
            "response_time_ms": round((monotonic() - started) * 1000, 1),
        }

    if client is None:
        checks["servicenow"] = {"status": "unconfigured", "message": "ServiceNow is not configured"}
    else:
        started = monotonic()
        reachable = await client.health_check()
        checks["servicenow"] = {
            "status": "healthy" if reachable else "unhealthy",
            "message": "ServiceNow reachable" if reachable else "ServiceNow connection test failed",
            "response_time_ms": round((monotonic() - started) * 1000, 1),
        }

    payload["checks"] = checks
    return payload
