"""Translate remote ticket states into :class:`TicketStatus` values.

The remote system reports state either as a small integer code (``1``..``6``)
or as a lowercase name. Anything else maps to ``TicketStatus.NEW``; callers
that care about the difference use :func:`is_known_state` and keep the raw
value for audit.
"""
from __future__ import annotations

from typing import Any

from ticket_automation.models.tickets import TicketStatus

DEFAULT_STATUS = TicketStatus.NEW

_STATE_MAP: dict[str, TicketStatus] = {
    "1": TicketStatus.NEW,
    "2": TicketStatus.IN_PROGRESS,
    "3": TicketStatus.ON_HOLD,
    "4": TicketStatus.RESOLVED,
    "5": TicketStatus.CLOSED,
    "6": TicketStatus.CANCELLED,
    "new": TicketStatus.NEW,
    "in_progress": TicketStatus.IN_PROGRESS,
    "on_hold": TicketStatus.ON_HOLD,
    "resolved": TicketStatus.RESOLVED,
    "closed": TicketStatus.CLOSED,
    "cancelled": TicketStatus.CANCELLED,
}

_REMOTE_CODES: dict[TicketStatus, str] = {
    status: code for code, status in _STATE_MAP.items() if code.isdigit()
}


def _normalise_state(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, dict):
        value = value.get("value") or value.get("display_value") or ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip().lower()
    return text.replace(" ", "_").replace("-", "_")


def is_known_state(value: Any) -> bool:
    return _normalise_state(value) in _STATE_MAP


def map_remote_state(value: Any) -> TicketStatus:
    """Return the internal status for ``value``, defaulting to ``NEW``."""
    return _STATE_MAP.get(_normalise_state(value), DEFAULT_STATUS)


def to_remote_state(status: TicketStatus) -> str:
    return _REMOTE_CODES[TicketStatus(status)]
