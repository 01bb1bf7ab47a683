from __future__ import annotations

import json
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Sequence

import aiomysql

from ticket_automation.core.database import db
from ticket_automation.core.errors import ConflictError, NotFoundError, PersistenceError
from ticket_automation.core.logging import log_error, log_info
from ticket_automation.models.tickets import (
    ExternalTicket,
    RequestPriority,
    RequestStatus,
    SyncStatus,
    TicketRequest,
    TicketStatus,
    utcnow,
)

_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_REQUEST_COLUMNS = (
    "id",
    "owner_id",
    "title",
    "description",
    "business_task_type",
    "status",
    "priority",
    "request_data",
    "retry_count",
    "max_retries",
    "failure_reason",
    "estimated_completion",
    "actual_completion",
    "processing_started",
    "processing_completed",
    "version",
    "created_at",
    "updated_at",
)

_TICKET_COLUMNS = (
    "id",
    "request_id",
    "position",
    "external_id",
    "reference_number",
    "title",
    "description",
    "status",
    "priority",
    "category",
    "subcategory",
    "assignment_group",
    "assigned_to",
    "ticket_data",
    "last_sync_at",
    "sync_status",
    "sync_error",
    "created_in_external_at",
    "updated_in_external_at",
    "closed_in_external_at",
    "created_at",
    "updated_at",
)


@asynccontextmanager
async def _store_errors(action: str, **meta: Any) -> AsyncIterator[None]:
    try:
        yield
    except (aiomysql.Error, sqlite3.Error, OSError) as exc:
        log_error(f"Ticket store {action} failed", error=str(exc), **meta)
        raise PersistenceError(f"Unable to {action}: {exc}") from exc
    except RuntimeError as exc:
        if "not initialised" not in str(exc):
            raise
        log_error(f"Ticket store {action} failed", error=str(exc), **meta)
        raise PersistenceError(f"Unable to {action}: {exc}") from exc


def _format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(_DATETIME_FORMAT)


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _load_json(value: Any) -> dict[str, Any]:
    if value in (None, ""):
        return {}
    if isinstance(value, dict):
        return dict(value)
    try:
        parsed = json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _dump_json(value: dict[str, Any] | None) -> str:
    return json.dumps(value or {}, ensure_ascii=False, default=str)


def _request_params(request: TicketRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "owner_id": request.owner_id,
        "title": request.title,
        "description": request.description,
        "business_task_type": request.business_task_type,
        "status": request.status.value,
        "priority": request.priority.value,
        "request_data": _dump_json(request.request_data),
        "retry_count": request.retry_count,
        "max_retries": request.max_retries,
        "failure_reason": request.failure_reason,
        "estimated_completion": _format_datetime(request.estimated_completion),
        "actual_completion": _format_datetime(request.actual_completion),
        "processing_started": _format_datetime(request.processing_started),
        "processing_completed": _format_datetime(request.processing_completed),
        "version": request.version,
        "created_at": _format_datetime(request.created_at),
        "updated_at": _format_datetime(request.updated_at),
    }


def _ticket_params(ticket: ExternalTicket) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "request_id": ticket.request_id,
        "position": ticket.position,
        "external_id": ticket.external_id,
        "reference_number": ticket.reference_number,
        "title": ticket.title,
        "description": ticket.description,
        "status": ticket.status.value,
        "priority": ticket.priority.value,
        "category": ticket.category,
        "subcategory": ticket.subcategory,
        "assignment_group": ticket.assignment_group,
        "assigned_to": ticket.assigned_to,
        "ticket_data": _dump_json(ticket.ticket_data),
        "last_sync_at": _format_datetime(ticket.last_sync_at),
        "sync_status": ticket.sync_status.value if ticket.sync_status else None,
        "sync_error": ticket.sync_error,
        "created_in_external_at": _format_datetime(ticket.created_in_external_at),
        "updated_in_external_at": _format_datetime(ticket.updated_in_external_at),
        "closed_in_external_at": _format_datetime(ticket.closed_in_external_at),
        "created_at": _format_datetime(ticket.created_at),
        "updated_at": _format_datetime(ticket.updated_at),
    }


def _normalise_request(row: dict[str, Any]) -> TicketRequest:
    return TicketRequest(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        title=row.get("title") or "",
        description=row.get("description") or "",
        business_task_type=row.get("business_task_type") or "general",
        status=RequestStatus(row.get("status") or RequestStatus.PENDING.value),
        priority=RequestPriority.coerce(row.get("priority")),
        request_data=_load_json(row.get("request_data")),
        retry_count=int(row.get("retry_count") or 0),
        max_retries=int(row.get("max_retries") if row.get("max_retries") is not None else 3),
        failure_reason=row.get("failure_reason"),
        estimated_completion=_parse_datetime(row.get("estimated_completion")),
        actual_completion=_parse_datetime(row.get("actual_completion")),
        processing_started=_parse_datetime(row.get("processing_started")),
        processing_completed=_parse_datetime(row.get("processing_completed")),
        version=int(row.get("version") or 1),
        created_at=_parse_datetime(row.get("created_at")) or utcnow(),
        updated_at=_parse_datetime(row.get("updated_at")) or utcnow(),
    )


def _normalise_ticket(row: dict[str, Any]) -> ExternalTicket:
    sync_status = row.get("sync_status")
    return ExternalTicket(
        id=str(row["id"]),
        request_id=str(row["request_id"]),
        position=int(row.get("position") or 0),
        external_id=row.get("external_id") or None,
        reference_number=row.get("reference_number") or None,
        title=row.get("title") or "",
        description=row.get("description") or "",
        status=TicketStatus(row.get("status") or TicketStatus.NEW.value),
        priority=RequestPriority.coerce(row.get("priority")),
        category=row.get("category"),
        subcategory=row.get("subcategory"),
        assignment_group=row.get("assignment_group"),
        assigned_to=row.get("assigned_to"),
        ticket_data=_load_json(row.get("ticket_data")),
        last_sync_at=_parse_datetime(row.get("last_sync_at")),
        sync_status=SyncStatus(sync_status) if sync_status else None,
        sync_error=row.get("sync_error"),
        created_in_external_at=_parse_datetime(row.get("created_in_external_at")),
        updated_in_external_at=_parse_datetime(row.get("updated_in_external_at")),
        closed_in_external_at=_parse_datetime(row.get("closed_in_external_at")),
        created_at=_parse_datetime(row.get("created_at")) or utcnow(),
        updated_at=_parse_datetime(row.get("updated_at")) or utcnow(),
    )


def _insert_sql(table: str, columns: Sequence[str]) -> str:
    placeholders = ", ".join(["%s"] * len(columns))
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


async def create_request_with_tickets(
    request: TicketRequest, tickets: Sequence[ExternalTicket]
) -> TicketRequest:
    """Insert the request and all of its ticket stubs in one transaction."""
    request_params = _request_params(request)
    async with _store_errors("create ticket request", request_id=request.id):
        async with db.transaction() as tx:
            await tx.execute(
                _insert_sql("ticket_requests", _REQUEST_COLUMNS),
                tuple(request_params[column] for column in _REQUEST_COLUMNS),
            )
            for ticket in tickets:
                ticket_params = _ticket_params(ticket)
                await tx.execute(
                    _insert_sql("external_tickets", _TICKET_COLUMNS),
                    tuple(ticket_params[column] for column in _TICKET_COLUMNS),
                )
    log_info(
        "Ticket request stored",
        request_id=request.id,
        owner_id=request.owner_id,
        ticket_count=len(tickets),
    )
    return request


async def get_request(request_id: str) -> TicketRequest | None:
    async with _store_errors("load ticket request", request_id=request_id):
        row = await db.fetch_one("SELECT * FROM ticket_requests WHERE id = %s", (request_id,))
    return _normalise_request(row) if row else None


async def save_request(request: TicketRequest) -> TicketRequest:
    """Persist ``request`` if nobody else changed it since it was loaded.

    The stored ``version`` must still match ``request.version``; on success
    the returned copy carries the incremented version.
    """
    params = _request_params(request)
    columns = [column for column in _REQUEST_COLUMNS if column not in {"id", "version", "created_at"}]
    assignments = ", ".join(f"{column} = %s" for column in columns)
    sql = (
        f"UPDATE ticket_requests SET {assignments}, version = version + 1 "
        "WHERE id = %s AND version = %s"
    )
    values = tuple(params[column] for column in columns) + (request.id, request.version)
    async with _store_errors("save ticket request", request_id=request.id):
        affected = await db.execute(sql, values)
        if not affected:
            existing = await db.fetch_one(
                "SELECT version FROM ticket_requests WHERE id = %s", (request.id,)
            )
    if not affected:
        if existing is None:
            raise NotFoundError(f"Ticket request {request.id} not found")
        raise ConflictError(
            f"Ticket request {request.id} was modified concurrently "
            f"(expected version {request.version}, found {existing.get('version')})"
        )
    return replace(request, version=request.version + 1)


async def list_requests(
    *,
    owner_id: str | None = None,
    status: RequestStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[TicketRequest]:
    where: list[str] = []
    params: list[Any] = []
    if owner_id is not None:
        where.append("owner_id = %s")
        params.append(owner_id)
    if status is not None:
        where.append("status = %s")
        params.append(RequestStatus(status).value)
    sql = "SELECT * FROM ticket_requests"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
    params.extend([int(limit), int(offset)])
    async with _store_errors("list ticket requests"):
        rows = await db.fetch_all(sql, tuple(params))
    return [_normalise_request(row) for row in rows or []]


async def get_ticket(ticket_id: str) -> ExternalTicket | None:
    async with _store_errors("load ticket", ticket_id=ticket_id):
        row = await db.fetch_one("SELECT * FROM external_tickets WHERE id = %s", (ticket_id,))
    return _normalise_ticket(row) if row else None


async def save_ticket(ticket: ExternalTicket) -> ExternalTicket:
    params = _ticket_params(ticket)
    columns = [column for column in _TICKET_COLUMNS if column not in {"id", "request_id", "created_at"}]
    assignments = ", ".join(f"{column} = %s" for column in columns)
    values = tuple(params[column] for column in columns) + (ticket.id,)
    async with _store_errors("save ticket", ticket_id=ticket.id):
        affected = await db.execute(
            f"UPDATE external_tickets SET {assignments} WHERE id = %s", values
        )
        # MySQL reports 0 affected rows when the UPDATE writes identical values
        if not affected:
            existing = await db.fetch_one(
                "SELECT 1 AS found FROM external_tickets WHERE id = %s", (ticket.id,)
            )
    if not affected and existing is None:
        raise NotFoundError(f"Ticket {ticket.id} not found")
    return ticket


async def list_tickets_for_request(request_id: str) -> list[ExternalTicket]:
    async with _store_errors("list tickets", request_id=request_id):
        rows = await db.fetch_all(
            "SELECT * FROM external_tickets WHERE request_id = %s ORDER BY position ASC, created_at ASC",
            (request_id,),
        )
    return [_normalise_ticket(row) for row in rows or []]


async def list_tickets_needing_sync(before: datetime, *, limit: int = 200) -> list[ExternalTicket]:
    """Created tickets whose last sync is older than ``before`` (or never ran)."""
    async with _store_errors("list tickets needing sync"):
        rows = await db.fetch_all(
            """
            SELECT * FROM external_tickets
            WHERE external_id IS NOT NULL
              AND (last_sync_at IS NULL OR last_sync_at < %s)
            ORDER BY last_sync_at ASC
            LIMIT %s
            """,
            (_format_datetime(before), int(limit)),
        )
    return [_normalise_ticket(row) for row in rows or []]


class SqlTicketStore:
    """``TicketStore`` backed by the shared database connection."""

    async def create_request_with_tickets(
        self, request: TicketRequest, tickets: Sequence[ExternalTicket]
    ) -> TicketRequest:
        return await create_request_with_tickets(request, tickets)

    async def get_request(self, request_id: str) -> TicketRequest | None:
        return await get_request(request_id)

    async def save_request(self, request: TicketRequest) -> TicketRequest:
        return await save_request(request)

    async def list_requests(
        self,
        *,
        owner_id: str | None = None,
        status: RequestStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[TicketRequest]:
        return await list_requests(owner_id=owner_id, status=status, limit=limit, offset=offset)

    async def get_ticket(self, ticket_id: str) -> ExternalTicket | None:
        return await get_ticket(ticket_id)

    async def save_ticket(self, ticket: ExternalTicket) -> ExternalTicket:
        return await save_ticket(ticket)

    async def list_tickets_for_request(self, request_id: str) -> list[ExternalTicket]:
        return await list_tickets_for_request(request_id)

    async def list_tickets_needing_sync(
        self, before: datetime, *, limit: int = 200
    ) -> list[ExternalTicket]:
        return await list_tickets_needing_sync(before, limit=limit)
