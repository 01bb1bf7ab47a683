from __future__ import annotations

from datetime import timedelta

from fastapi import FastAPI
from loguru import logger

from ticket_automation.api.routes import health, ticket_requests
from ticket_automation.core.config import get_settings
from ticket_automation.core.database import db
from ticket_automation.core.logging import configure_logging
from ticket_automation.repositories.ticket_requests import SqlTicketStore
from ticket_automation.services.servicenow import ServiceNowConfigurationError, build_client
from ticket_automation.services.ticket_sync import TicketSyncService

configure_logging()
settings = get_settings()

tags_metadata = [
    {
        "name": "Ticket Requests",
        "description": "Submit task requests and track the ServiceNow tickets created for them.",
    },
    {
        "name": "Health",
        "description": "Liveness and dependency connectivity checks.",
    },
]

app = FastAPI(
    title=settings.app_name,
    description="Creates and tracks ServiceNow tickets for internally submitted task requests.",
    version=settings.version,
    openapi_tags=tags_metadata,
)
app.state.servicenow_client = None
app.state.ticket_sync_service = None


@app.on_event("startup")
async def _startup() -> None:
    await db.connect()
    await db.run_migrations()
    try:
        client = build_client(settings)
    except ServiceNowConfigurationError as exc:
        logger.warning("ServiceNow integration disabled: {error}", error=str(exc))
        return
    app.state.servicenow_client = client
    app.state.ticket_sync_service = TicketSyncService(
        client,
        SqlTicketStore(),
        default_max_retries=settings.default_max_retries,
        sync_concurrency=settings.sync_concurrency,
        stale_after=timedelta(minutes=settings.sync_stale_minutes),
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    client = app.state.servicenow_client
    if client is not None:
        await client.aclose()
        app.state.servicenow_client = None
    app.state.ticket_sync_service = None
    await db.disconnect()


app.include_router(health.router)
app.include_router(ticket_requests.router)
