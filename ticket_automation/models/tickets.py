"""Domain records for ticket requests and the external tickets created for them.

A :class:`TicketRequest` owns one or more :class:`ExternalTicket` rows. Requests
move through the lifecycle in :mod:`ticket_automation.services.request_lifecycle`;
tickets are only ever updated in place, never deleted.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RequestPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def remote_code(self) -> str:
        """Numeric priority understood by the remote ticketing system."""
        return _REMOTE_PRIORITY_CODES[self]

    @classmethod
    def coerce(cls, value: Any) -> "RequestPriority":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if text in (member.value, member.remote_code):
                return member
        return cls.MEDIUM


_REMOTE_PRIORITY_CODES = {
    RequestPriority.CRITICAL: "1",
    RequestPriority.HIGH: "2",
    RequestPriority.MEDIUM: "3",
    RequestPriority.LOW: "4",
}


class TicketStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


_OPEN_TICKET_STATUSES = frozenset(
    {TicketStatus.NEW, TicketStatus.IN_PROGRESS, TicketStatus.ON_HOLD}
)
_CLOSED_TICKET_STATUSES = frozenset(
    {TicketStatus.RESOLVED, TicketStatus.CLOSED, TicketStatus.CANCELLED}
)


@dataclass(slots=True)
class TicketRequest:
    owner_id: str
    title: str
    description: str
    business_task_type: str = "general"
    priority: RequestPriority = RequestPriority.MEDIUM
    request_data: dict[str, Any] = field(default_factory=dict)
    status: RequestStatus = RequestStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    failure_reason: str | None = None
    estimated_completion: datetime | None = None
    actual_completion: datetime | None = None
    processing_started: datetime | None = None
    processing_completed: datetime | None = None
    id: str = field(default_factory=new_id)
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_completed(self) -> bool:
        return self.status is RequestStatus.COMPLETED

    def is_failed(self) -> bool:
        return self.status is RequestStatus.FAILED

    def can_retry(self) -> bool:
        return self.is_failed() and self.retry_count < self.max_retries

    def processing_time(self) -> timedelta | None:
        if self.processing_started and self.processing_completed:
            return self.processing_completed - self.processing_started
        return None

    def total_processing_time(self) -> timedelta | None:
        if self.created_at and self.actual_completion:
            return self.actual_completion - self.created_at
        return None


@dataclass(slots=True)
class ExternalTicket:
    request_id: str
    title: str
    description: str
    priority: RequestPriority = RequestPriority.MEDIUM
    category: str | None = None
    subcategory: str | None = None
    assignment_group: str | None = None
    assigned_to: str | None = None
    ticket_data: dict[str, Any] = field(default_factory=dict)
    status: TicketStatus = TicketStatus.NEW
    external_id: str | None = None
    reference_number: str | None = None
    position: int = 0
    last_sync_at: datetime | None = None
    sync_status: SyncStatus | None = None
    sync_error: str | None = None
    created_in_external_at: datetime | None = None
    updated_in_external_at: datetime | None = None
    closed_in_external_at: datetime | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_created(self) -> bool:
        return self.external_id is not None

    def record_creation(self, external_id: str, reference_number: str, when: datetime) -> None:
        """Store the remote identifiers; both are set together or not at all."""
        if not external_id or not reference_number:
            raise ValueError("external_id and reference_number must both be provided")
        if self.external_id is not None:
            raise ValueError(f"Ticket {self.id} already has external id {self.external_id}")
        self.external_id = external_id
        self.reference_number = reference_number
        self.status = TicketStatus.NEW
        self.sync_status = SyncStatus.SUCCESS
        self.sync_error = None
        self.created_in_external_at = when
        self.last_sync_at = when
        self.updated_at = when

    def record_sync_failure(self, reason: str, when: datetime) -> None:
        self.sync_status = SyncStatus.FAILED
        self.sync_error = reason
        self.last_sync_at = when
        self.updated_at = when

    def is_open(self) -> bool:
        return self.status in _OPEN_TICKET_STATUSES

    def is_closed(self) -> bool:
        return self.status in _CLOSED_TICKET_STATUSES

    def is_resolved(self) -> bool:
        return self.status is TicketStatus.RESOLVED

    def needs_sync(self, threshold: timedelta = timedelta(minutes=5), *, now: datetime | None = None) -> bool:
        if self.last_sync_at is None:
            return True
        return self.last_sync_at < (now or utcnow()) - threshold

    def external_url(self, base_url: str) -> str | None:
        if not self.external_id:
            return None
        base = str(base_url or "").rstrip("/")
        return f"{base}/nav_to.do?uri=sc_req_item.do?sys_id={self.external_id}"
