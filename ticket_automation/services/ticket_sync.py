"""Create, reconcile and retry the external tickets behind a ticket request.

The service is driven explicitly: callers submit requests, retry or cancel
them, and trigger status syncs. Nothing here runs in the background; polling
frequency is left to whoever schedules :meth:`TicketSyncService.sync_stale`.
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol, Sequence

from pydantic import ValidationError as PydanticValidationError

from ticket_automation.core.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from ticket_automation.core.logging import log_error, log_info, log_warning
from ticket_automation.models.tickets import (
    ExternalTicket,
    RequestStatus,
    SyncStatus,
    TicketRequest,
    TicketStatus,
    utcnow,
)
from ticket_automation.schemas.ticket_requests import TicketRequestCreate
from ticket_automation.services import request_lifecycle
from ticket_automation.services.servicenow import BatchItemResult, RemoteTicketState
from ticket_automation.services.status_mapper import (
    is_known_state,
    map_remote_state,
    to_remote_state,
)

REMOTE_STATE_KEY = "remote_state_raw"
_INTERNAL_DATA_KEYS = frozenset({REMOTE_STATE_KEY})
_CLOSING_STATUSES = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})
_MAX_REASON_ITEMS = 10


class TicketingClient(Protocol):
    async def create_batch(self, items: Sequence[Mapping[str, Any]]) -> list[BatchItemResult]: ...

    async def fetch_status(self, external_id: str) -> RemoteTicketState: ...

    async def update_status(
        self, external_id: str, new_state: str, extra_fields: Mapping[str, Any] | None = None
    ) -> dict[str, Any]: ...


class TicketStore(Protocol):
    async def create_request_with_tickets(
        self, request: TicketRequest, tickets: Sequence[ExternalTicket]
    ) -> TicketRequest: ...

    async def get_request(self, request_id: str) -> TicketRequest | None: ...

    async def save_request(self, request: TicketRequest) -> TicketRequest: ...

    async def list_requests(
        self,
        *,
        owner_id: str | None = None,
        status: RequestStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[TicketRequest]: ...

    async def get_ticket(self, ticket_id: str) -> ExternalTicket | None: ...

    async def save_ticket(self, ticket: ExternalTicket) -> ExternalTicket: ...

    async def list_tickets_for_request(self, request_id: str) -> list[ExternalTicket]: ...

    async def list_tickets_needing_sync(
        self, before: datetime, *, limit: int = 200
    ) -> list[ExternalTicket]: ...


@dataclass(slots=True)
class SubmissionResult:
    request: TicketRequest
    tickets: list[ExternalTicket]

    @property
    def request_id(self) -> str:
        return self.request.id

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request.id,
            "tickets": [
                {"id": ticket.id, "title": ticket.title, "status": ticket.status.value}
                for ticket in self.tickets
            ],
        }


@dataclass(slots=True)
class SyncSummary:
    checked: int = 0
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    def merge(self, other: "SyncSummary") -> None:
        self.checked += other.checked
        self.synced += other.synced
        self.failed += other.failed
        self.skipped += other.skipped
        self.failures.update(other.failures)

    def as_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def _parse_submission(payload: TicketRequestCreate | Mapping[str, Any]) -> TicketRequestCreate:
    if isinstance(payload, TicketRequestCreate):
        return payload
    try:
        return TicketRequestCreate.model_validate(dict(payload))
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid ticket request: {exc.errors()[0].get('msg')}") from exc


def _remote_payload(ticket: ExternalTicket) -> dict[str, Any]:
    data = {
        key: value
        for key, value in ticket.ticket_data.items()
        if key not in _INTERNAL_DATA_KEYS
    }
    data.update(
        {
            "title": ticket.title,
            "description": ticket.description,
            "priority": ticket.priority.remote_code,
            "category": ticket.category,
            "subcategory": ticket.subcategory,
            "assignment_group": ticket.assignment_group,
        }
    )
    return data


def _summarise_failures(failed: Sequence[ExternalTicket], total: int) -> str:
    details = [
        f"{ticket.title}: {ticket.sync_error or 'creation failed'}"
        for ticket in failed[:_MAX_REASON_ITEMS]
    ]
    if len(failed) > _MAX_REASON_ITEMS:
        details.append(f"and {len(failed) - _MAX_REASON_ITEMS} more")
    if len(failed) == total:
        prefix = f"All {total} tickets failed to create"
    else:
        prefix = f"{len(failed)} of {total} tickets failed to create"
    return f"{prefix}: " + "; ".join(details)


class TicketSyncService:
    """Orchestrates ticket creation, retries, cancellation and status sync."""

    def __init__(
        self,
        client: TicketingClient,
        store: TicketStore,
        *,
        default_max_retries: int = 3,
        sync_concurrency: int = 5,
        stale_after: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._store = store
        self._default_max_retries = default_max_retries
        self._sync_concurrency = max(1, sync_concurrency)
        self._stale_after = stale_after
        self._clock = clock

    async def get_request(self, request_id: str) -> TicketRequest:
        request = await self._store.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Ticket request {request_id} not found")
        return request

    async def list_tickets_for_request(self, request_id: str) -> list[ExternalTicket]:
        return await self._store.list_tickets_for_request(request_id)

    async def list_requests(
        self,
        *,
        owner_id: str | None = None,
        status: RequestStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[TicketRequest]:
        return await self._store.list_requests(
            owner_id=owner_id, status=status, limit=limit, offset=offset
        )

    async def submit_and_create(
        self,
        owner_id: str,
        payload: TicketRequestCreate | Mapping[str, Any],
    ) -> SubmissionResult:
        if not owner_id:
            raise ValidationError("An owner is required to submit a ticket request")
        submission = _parse_submission(payload)
        if not submission.tickets:
            raise ValidationError("At least one ticket is required")

        now = self._clock()
        request = TicketRequest(
            owner_id=str(owner_id),
            title=submission.title,
            description=submission.description,
            business_task_type=submission.business_task_type,
            priority=submission.priority,
            request_data=dict(submission.request_data),
            estimated_completion=submission.estimated_completion,
            max_retries=(
                submission.max_retries
                if submission.max_retries is not None
                else self._default_max_retries
            ),
            created_at=now,
            updated_at=now,
        )
        tickets = [
            ExternalTicket(
                request_id=request.id,
                position=position,
                title=spec.title or submission.title,
                description=spec.description or submission.description,
                priority=spec.priority or submission.priority,
                category=spec.category,
                subcategory=spec.subcategory,
                assignment_group=spec.assignment_group,
                ticket_data=spec.extra_fields,
                created_at=now,
                updated_at=now,
            )
            for position, spec in enumerate(submission.tickets)
        ]

        request = await self._store.create_request_with_tickets(request, tickets)
        log_info(
            "Ticket request submitted",
            request_id=request.id,
            owner_id=request.owner_id,
            ticket_count=len(tickets),
        )
        request = await self._create_remote_tickets(request, tickets)
        return SubmissionResult(request=request, tickets=tickets)

    async def retry(self, request_id: str) -> TicketRequest:
        """Re-attempt creation for the tickets that never reached the remote system."""
        request = await self.get_request(request_id)
        request = request_lifecycle.reset_for_retry(request, now=self._clock())
        request = await self._store.save_request(request)
        tickets = await self._store.list_tickets_for_request(request.id)
        log_info(
            "Ticket request retry initiated",
            request_id=request.id,
            retry_count=request.retry_count,
            max_retries=request.max_retries,
            pending=sum(1 for ticket in tickets if not ticket.is_created),
        )
        return await self._create_remote_tickets(request, tickets)

    async def cancel(self, request_id: str, *, cancel_remote: bool = False) -> TicketRequest:
        request = await self.get_request(request_id)
        request = request_lifecycle.mark_cancelled(request, now=self._clock())
        request = await self._store.save_request(request)
        log_info("Ticket request cancelled", request_id=request.id)
        if cancel_remote:
            await self._cancel_remote_tickets(request.id)
        return request

    async def sync_statuses(self, request_id: str) -> int:
        tickets = await self._store.list_tickets_for_request(request_id)
        if not tickets:
            raise NotFoundError(f"No tickets found for ticket request {request_id}")
        summary = await self.sync_tickets(tickets)
        log_info("Ticket request synced", request_id=request_id, **summary.as_dict())
        return summary.synced

    async def sync_tickets(self, tickets: Sequence[ExternalTicket]) -> SyncSummary:
        """Pull the remote state of each created ticket.

        A failure on one ticket is recorded on that ticket and the loop moves
        on; tickets that were never created remotely are skipped.
        """
        summary = SyncSummary()
        for ticket in tickets:
            summary.checked += 1
            if not ticket.external_id:
                log_warning("Cannot sync ticket without external id", ticket_id=ticket.id)
                summary.skipped += 1
                continue
            try:
                state = await self._client.fetch_status(ticket.external_id)
                self._apply_remote_state(ticket, state)
                await self._store.save_ticket(ticket)
            except (PersistenceError, ConflictError):
                raise
            except Exception as exc:  # one ticket's failure must not stop the rest
                ticket.record_sync_failure(str(exc) or type(exc).__name__, self._clock())
                if not isinstance(exc, NotFoundError):
                    await self._store.save_ticket(ticket)
                summary.failed += 1
                summary.failures[ticket.id] = ticket.sync_error or ""
                log_error(
                    "Failed to sync ticket status",
                    ticket_id=ticket.id,
                    external_id=ticket.external_id,
                    error=ticket.sync_error,
                )
                continue
            summary.synced += 1
        return summary

    async def sync_stale(
        self,
        *,
        threshold: timedelta | None = None,
        limit: int = 200,
        concurrency: int | None = None,
    ) -> SyncSummary:
        """Sync every created ticket not refreshed within ``threshold``.

        Tickets of the same request are synced sequentially; different
        requests run concurrently up to ``concurrency`` at a time.
        """
        now = self._clock()
        threshold = threshold or self._stale_after
        tickets = await self._store.list_tickets_needing_sync(now - threshold, limit=limit)
        groups: dict[str, list[ExternalTicket]] = {}
        for ticket in tickets:
            if not ticket.external_id or not ticket.needs_sync(threshold, now=now):
                continue
            groups.setdefault(ticket.request_id, []).append(ticket)

        semaphore = asyncio.Semaphore(concurrency or self._sync_concurrency)

        async def _sync_group(group: list[ExternalTicket]) -> SyncSummary:
            async with semaphore:
                return await self.sync_tickets(group)

        summary = SyncSummary()
        for result in await asyncio.gather(*(_sync_group(group) for group in groups.values())):
            summary.merge(result)
        log_info("Stale ticket sync finished", requests=len(groups), **summary.as_dict())
        return summary

    async def _create_remote_tickets(
        self, request: TicketRequest, tickets: list[ExternalTicket]
    ) -> TicketRequest:
        processing = await self._store.save_request(
            request_lifecycle.mark_processing(request, now=self._clock())
        )
        pending = [ticket for ticket in tickets if not ticket.is_created]
        unrecorded: Sequence[ExternalTicket] = pending
        try:
            if pending:
                results = await self._client.create_batch(
                    [_remote_payload(ticket) for ticket in pending]
                )
                unrecorded = ()
                await self._record_batch_results(pending, results)
            request = await self._store.save_request(self._roll_up(processing, tickets))
        except Exception as exc:
            await self._persist_failure(processing, unrecorded, exc)
            raise
        log_info(
            "Ticket request processed",
            request_id=request.id,
            status=request.status.value,
            created=sum(1 for ticket in tickets if ticket.is_created),
            total=len(tickets),
        )
        return request

    async def _record_batch_results(
        self, pending: Sequence[ExternalTicket], results: Sequence[BatchItemResult]
    ) -> None:
        now = self._clock()
        for index, ticket in enumerate(pending):
            result = results[index] if index < len(results) else None
            if result is not None and result.ticket is not None:
                ticket.record_creation(
                    result.ticket.external_id, result.ticket.reference_number, now
                )
            else:
                reason = (result.error if result else None) or "No response from ServiceNow"
                ticket.record_sync_failure(reason, now)
                log_warning(
                    "External ticket creation failed",
                    request_id=ticket.request_id,
                    ticket_id=ticket.id,
                    error=reason,
                )
            await self._store.save_ticket(ticket)

    def _roll_up(self, request: TicketRequest, tickets: Sequence[ExternalTicket]) -> TicketRequest:
        now = self._clock()
        failed = [ticket for ticket in tickets if not ticket.is_created]
        if not failed:
            return request_lifecycle.mark_completed(request, now=now)
        return request_lifecycle.mark_failed(
            request, _summarise_failures(failed, len(tickets)), now=now
        )

    async def _persist_failure(
        self,
        request: TicketRequest,
        unrecorded: Sequence[ExternalTicket],
        error: Exception,
    ) -> None:
        message = str(error) or type(error).__name__
        log_error("Ticket request processing failed", request_id=request.id, error=message)
        try:
            now = self._clock()
            for ticket in unrecorded:
                ticket.record_sync_failure(message, now)
                await self._store.save_ticket(ticket)
            await self._store.save_request(
                request_lifecycle.mark_failed(request, message, now=now)
            )
        except Exception as persist_exc:
            log_error(
                "Unable to persist ticket request failure",
                request_id=request.id,
                error=str(persist_exc),
            )

    def _apply_remote_state(self, ticket: ExternalTicket, state: RemoteTicketState) -> None:
        now = self._clock()
        new_status = map_remote_state(state.state)
        if not is_known_state(state.state):
            log_warning(
                "Unknown remote ticket state, defaulting to new",
                ticket_id=ticket.id,
                external_id=ticket.external_id,
                raw_state=state.state,
            )
        ticket.ticket_data[REMOTE_STATE_KEY] = None if state.state is None else str(state.state)
        if new_status is not ticket.status:
            log_info(
                "Ticket status changed",
                ticket_id=ticket.id,
                external_id=ticket.external_id,
                old_status=ticket.status.value,
                new_status=new_status.value,
            )
            ticket.status = new_status
            ticket.updated_in_external_at = now
            if new_status in _CLOSING_STATUSES:
                ticket.closed_in_external_at = state.closed_at or now
        if state.assignee:
            ticket.assigned_to = state.assignee
        ticket.sync_status = SyncStatus.SUCCESS
        ticket.sync_error = None
        ticket.last_sync_at = now
        ticket.updated_at = now

    async def _cancel_remote_tickets(self, request_id: str) -> None:
        cancelled_state = to_remote_state(TicketStatus.CANCELLED)
        for ticket in await self._store.list_tickets_for_request(request_id):
            if not ticket.external_id or not ticket.is_open():
                continue
            now = self._clock()
            try:
                await self._client.update_status(
                    ticket.external_id,
                    cancelled_state,
                    {"work_notes": "Cancelled by ticket automation"},
                )
            except Exception as exc:  # remote cancellation is best-effort
                ticket.record_sync_failure(str(exc) or type(exc).__name__, now)
                log_warning(
                    "Remote ticket cancellation failed",
                    ticket_id=ticket.id,
                    external_id=ticket.external_id,
                    error=ticket.sync_error,
                )
            else:
                ticket.status = TicketStatus.CANCELLED
                ticket.updated_in_external_at = now
                ticket.sync_status = SyncStatus.SUCCESS
                ticket.sync_error = None
                ticket.last_sync_at = now
                ticket.updated_at = now
            await self._store.save_ticket(ticket)
