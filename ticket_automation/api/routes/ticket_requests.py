from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ticket_automation.api.dependencies.auth import get_current_principal
from ticket_automation.api.dependencies.database import require_database
from ticket_automation.api.dependencies.services import get_ticket_sync_service
from ticket_automation.core.config import get_settings
from ticket_automation.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    RemoteRejection,
    TicketAutomationError,
    TransportError,
    ValidationError,
)
from ticket_automation.models.tickets import RequestStatus
from ticket_automation.schemas.ticket_requests import (
    CancelRequest,
    ExternalTicketResponse,
    SubmissionResponse,
    SyncResponse,
    TicketRequestCreate,
    TicketRequestResponse,
    TicketSummary,
)
from ticket_automation.services.ticket_sync import TicketSyncService

router = APIRouter(
    prefix="/api/ticket-requests",
    tags=["Ticket Requests"],
    dependencies=[Depends(require_database)],
)


def _http_error(exc: TicketAutomationError) -> HTTPException:
    if isinstance(exc, InvalidTransitionError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, TransportError):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, RemoteRejection):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, PersistenceError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))


async def _load_owned_request(
    service: TicketSyncService, request_id: str, principal_id: str
):
    try:
        request = await service.get_request(request_id)
    except TicketAutomationError as exc:
        raise _http_error(exc) from exc
    if request.owner_id != principal_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket request not found")
    return request


@router.get("", response_model=list[TicketRequestResponse])
async def list_ticket_requests(
    status_filter: RequestStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    principal_id: str = Depends(get_current_principal),
    service: TicketSyncService = Depends(get_ticket_sync_service),
) -> list[TicketRequestResponse]:
    try:
        records = await service.list_requests(
            owner_id=principal_id,
            status=status_filter,
            limit=limit,
            offset=offset,
        )
    except TicketAutomationError as exc:
        raise _http_error(exc) from exc
    return [TicketRequestResponse.from_record(record) for record in records]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SubmissionResponse)
async def submit_ticket_request(
    payload: TicketRequestCreate,
    principal_id: str = Depends(get_current_principal),
    service: TicketSyncService = Depends(get_ticket_sync_service),
) -> SubmissionResponse:
    try:
        result = await service.submit_and_create(principal_id, payload)
    except TicketAutomationError as exc:
        raise _http_error(exc) from exc
    return SubmissionResponse(
        request_id=result.request_id,
        status=result.request.status,
        failure_reason=result.request.failure_reason,
        tickets=[TicketSummary(**item) for item in result.as_dict()["tickets"]],
    )


@router.get("/{request_id}", response_model=TicketRequestResponse)
async def get_ticket_request(
    request_id: str,
    principal_id: str = Depends(get_current_principal),
    service: TicketSyncService = Depends(get_ticket_sync_service),
) -> TicketRequestResponse:
    request = await _load_owned_request(service, request_id, principal_id)
    return TicketRequestResponse.from_record(request)


@router.get("/{request_id}/tickets", response_model=list[ExternalTicketResponse])
async def list_request_tickets(
    request_id: str,
    principal_id: str = Depends(get_current_principal),
    service: TicketSyncService = Depends(get_ticket_sync_service),
) -> list[ExternalTicketResponse]:
    await _load_owned_request(service, request_id, principal_id)
    try:
        tickets = await service.list_tickets_for_request(request_id)
    except TicketAutomationError as exc:
        raise _http_error(exc) from exc
    base_url = get_settings().servicenow_base_url
    return [
        ExternalTicketResponse.from_record(ticket, base_url=str(base_url) if base_url else None)
        for ticket in tickets
    ]


@router.post("/{request_id}/retry", response_model=TicketRequestResponse)
async def retry_ticket_request(
    request_id: str,
    principal_id: str = Depends(get_current_principal),
    service: TicketSyncService = Depends(get_ticket_sync_service),
) -> TicketRequestResponse:
    await _load_owned_request(service, request_id, principal_id)
    try:
        request = await service.retry(request_id)
    except TicketAutomationError as exc:
        raise _http_error(exc) from exc
    return TicketRequestResponse.from_record(request)


@router.post("/{request_id}/cancel", response_model=TicketRequestResponse)
async def cancel_ticket_request(
    request_id: str,
    payload: CancelRequest | None = None,
    principal_id: str = Depends(get_current_principal),
    service: TicketSyncService = Depends(get_ticket_sync_service),
) -> TicketRequestResponse:
    await _load_owned_request(service, request_id, principal_id)
    try:
        request = await service.cancel(
            request_id, cancel_remote=bool(payload and payload.cancel_remote)
        )
    except TicketAutomationError as exc:
        raise _http_error(exc) from exc
    return TicketRequestResponse.from_record(request)


@router.post("/{request_id}/sync", response_model=SyncResponse)
async def sync_ticket_request(
    request_id: str,
    principal_id: str = Depends(get_current_principal),
    service: TicketSyncService = Depends(get_ticket_sync_service),
) -> SyncResponse:
    await _load_owned_request(service, request_id, principal_id)
    try:
        synced = await service.sync_statuses(request_id)
    except TicketAutomationError as exc:
        raise _http_error(exc) from exc
    return SyncResponse(request_id=request_id, synced_tickets=synced)
