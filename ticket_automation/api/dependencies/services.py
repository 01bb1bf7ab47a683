from __future__ import annotations

from fastapi import HTTPException, Request, status

from ticket_automation.services.servicenow import ServiceNowClient
from ticket_automation.services.ticket_sync import TicketSyncService


def get_ticket_sync_service(request: Request) -> TicketSyncService:
    service: TicketSyncService | None = getattr(request.app.state, "ticket_sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="ServiceNow integration is not configured",
        )
    return service


def get_servicenow_client(request: Request) -> ServiceNowClient | None:
    return getattr(request.app.state, "servicenow_client", None)
