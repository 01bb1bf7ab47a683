from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from ticket_automation.core.errors import InvalidTransitionError
from ticket_automation.models.tickets import RequestStatus, TicketRequest, utcnow

ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.PROCESSING, RequestStatus.CANCELLED}),
    RequestStatus.PROCESSING: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.CANCELLED}
    ),
    RequestStatus.FAILED: frozenset({RequestStatus.PENDING, RequestStatus.CANCELLED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[RequestStatus(current)]


def _ensure_transition(request: TicketRequest, target: RequestStatus) -> None:
    if not can_transition(request.status, target):
        raise InvalidTransitionError(request.status.value, target.value)


def mark_processing(request: TicketRequest, *, now: datetime | None = None) -> TicketRequest:
    _ensure_transition(request, RequestStatus.PROCESSING)
    now = now or utcnow()
    return replace(
        request,
        status=RequestStatus.PROCESSING,
        processing_started=now,
        processing_completed=None,
        updated_at=now,
    )


def mark_completed(request: TicketRequest, *, now: datetime | None = None) -> TicketRequest:
    _ensure_transition(request, RequestStatus.COMPLETED)
    now = now or utcnow()
    return replace(
        request,
        status=RequestStatus.COMPLETED,
        failure_reason=None,
        processing_completed=now,
        actual_completion=now,
        updated_at=now,
    )


def mark_failed(
    request: TicketRequest, reason: str, *, now: datetime | None = None
) -> TicketRequest:
    _ensure_transition(request, RequestStatus.FAILED)
    now = now or utcnow()
    return replace(
        request,
        status=RequestStatus.FAILED,
        failure_reason=reason or "Request processing failed",
        processing_completed=now,
        updated_at=now,
    )


def reset_for_retry(request: TicketRequest, *, now: datetime | None = None) -> TicketRequest:
    """Move a failed request back to pending and count the attempt.

    Only allowed while ``request.can_retry()`` holds; the returned copy has
    its processing timestamps and failure reason cleared.
    """
    if not request.can_retry():
        if request.status is RequestStatus.FAILED:
            raise InvalidTransitionError(
                request.status.value,
                RequestStatus.PENDING.value,
                f"Request {request.id} has used all {request.max_retries} retries",
            )
        raise InvalidTransitionError(
            request.status.value,
            RequestStatus.PENDING.value,
            f"Request {request.id} cannot be retried while {request.status.value}",
        )
    now = now or utcnow()
    return replace(
        request,
        status=RequestStatus.PENDING,
        retry_count=request.retry_count + 1,
        processing_started=None,
        processing_completed=None,
        failure_reason=None,
        updated_at=now,
    )


def mark_cancelled(request: TicketRequest, *, now: datetime | None = None) -> TicketRequest:
    if request.is_completed():
        raise InvalidTransitionError(
            request.status.value,
            RequestStatus.CANCELLED.value,
            "Cannot cancel completed ticket request",
        )
    _ensure_transition(request, RequestStatus.CANCELLED)
    now = now or utcnow()
    return replace(
        request,
        status=RequestStatus.CANCELLED,
        processing_completed=now,
        updated_at=now,
    )
