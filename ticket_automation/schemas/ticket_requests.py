from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ticket_automation.models.tickets import (
    RequestPriority,
    RequestStatus,
    SyncStatus,
    TicketStatus,
)


def _lower_priority(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


class TicketSpec(BaseModel):
    """One desired external ticket. Unknown keys are kept as extra ticket data."""

    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    priority: Optional[RequestPriority] = None
    category: Optional[str] = Field(default=None, max_length=100)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    assignment_group: Optional[str] = Field(
        default=None,
        max_length=100,
        validation_alias=AliasChoices("assignment_group", "assignmentGroup"),
    )

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @field_validator("priority", mode="before")
    @classmethod
    def _normalise_priority(cls, value: Any) -> Any:
        return _lower_priority(value)

    @property
    def extra_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class TicketRequestCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    business_task_type: str = Field(
        default="general",
        max_length=100,
        validation_alias=AliasChoices("business_task_type", "businessTaskType"),
    )
    priority: RequestPriority = RequestPriority.MEDIUM
    request_data: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("request_data", "requestData"),
    )
    estimated_completion: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("estimated_completion", "estimatedCompletion"),
    )
    max_retries: Optional[int] = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("max_retries", "maxRetries"),
    )
    tickets: list[TicketSpec] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("priority", mode="before")
    @classmethod
    def _normalise_priority(cls, value: Any) -> Any:
        return _lower_priority(value)


class TicketSummary(BaseModel):
    id: str
    title: str
    status: TicketStatus


class SubmissionResponse(BaseModel):
    request_id: str
    status: RequestStatus
    failure_reason: Optional[str] = None
    tickets: list[TicketSummary]


class CancelRequest(BaseModel):
    cancel_remote: bool = Field(
        default=False,
        validation_alias=AliasChoices("cancel_remote", "cancelRemote"),
    )


class TicketRequestResponse(BaseModel):
    id: str
    owner_id: str
    title: str
    description: str
    business_task_type: str
    status: RequestStatus
    priority: RequestPriority
    request_data: dict[str, Any]
    retry_count: int
    max_retries: int
    can_retry: bool
    failure_reason: Optional[str] = None
    estimated_completion: Optional[datetime] = None
    actual_completion: Optional[datetime] = None
    processing_started: Optional[datetime] = None
    processing_completed: Optional[datetime] = None
    processing_time_seconds: Optional[float] = None
    total_processing_time_seconds: Optional[float] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, request: Any) -> "TicketRequestResponse":
        processing_time: timedelta | None = request.processing_time()
        total_time: timedelta | None = request.total_processing_time()
        return cls(
            id=request.id,
            owner_id=request.owner_id,
            title=request.title,
            description=request.description,
            business_task_type=request.business_task_type,
            status=request.status,
            priority=request.priority,
            request_data=request.request_data,
            retry_count=request.retry_count,
            max_retries=request.max_retries,
            can_retry=request.can_retry(),
            failure_reason=request.failure_reason,
            estimated_completion=request.estimated_completion,
            actual_completion=request.actual_completion,
            processing_started=request.processing_started,
            processing_completed=request.processing_completed,
            processing_time_seconds=processing_time.total_seconds() if processing_time is not None else None,
            total_processing_time_seconds=total_time.total_seconds() if total_time is not None else None,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )


class ExternalTicketResponse(BaseModel):
    id: str
    request_id: str
    external_id: Optional[str] = None
    reference_number: Optional[str] = None
    external_url: Optional[str] = None
    title: str
    description: str
    status: TicketStatus
    priority: RequestPriority
    category: Optional[str] = None
    subcategory: Optional[str] = None
    assignment_group: Optional[str] = None
    assigned_to: Optional[str] = None
    ticket_data: dict[str, Any]
    last_sync_at: Optional[datetime] = None
    sync_status: Optional[SyncStatus] = None
    sync_error: Optional[str] = None
    created_in_external_at: Optional[datetime] = None
    updated_in_external_at: Optional[datetime] = None
    closed_in_external_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, ticket: Any, *, base_url: str | None = None) -> "ExternalTicketResponse":
        return cls(
            id=ticket.id,
            request_id=ticket.request_id,
            external_id=ticket.external_id,
            reference_number=ticket.reference_number,
            external_url=ticket.external_url(base_url) if base_url else None,
            title=ticket.title,
            description=ticket.description,
            status=ticket.status,
            priority=ticket.priority,
            category=ticket.category,
            subcategory=ticket.subcategory,
            assignment_group=ticket.assignment_group,
            assigned_to=ticket.assigned_to,
            ticket_data=ticket.ticket_data,
            last_sync_at=ticket.last_sync_at,
            sync_status=ticket.sync_status,
            sync_error=ticket.sync_error,
            created_in_external_at=ticket.created_in_external_at,
            updated_in_external_at=ticket.updated_in_external_at,
            closed_in_external_at=ticket.closed_in_external_at,
        )


class SyncResponse(BaseModel):
    request_id: str
    synced_tickets: int
