import copy
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("LOG_LEVEL", "DEBUG")
for _name in ("SERVICENOW_BASE_URL", "SERVICENOW_USERNAME", "SERVICENOW_PASSWORD"):
    os.environ.pop(_name, None)

from ticket_automation.core.errors import ConflictError, NotFoundError  # noqa: E402
from ticket_automation.services.servicenow import (  # noqa: E402
    BatchItemResult,
    CreatedTicket,
    RemoteTicketState,
)


class InMemoryTicketStore:
    """Dict-backed store that mimics the SQL store's copy and version semantics."""

    def __init__(self):
        self.requests = {}
        self.tickets = {}
        self.request_saves = []
        self.fail_next_save = None

    async def create_request_with_tickets(self, request, tickets):
        self.requests[request.id] = copy.deepcopy(request)
        for ticket in tickets:
            self.tickets[ticket.id] = copy.deepcopy(ticket)
        return request

    async def get_request(self, request_id):
        stored = self.requests.get(request_id)
        return copy.deepcopy(stored) if stored else None

    async def save_request(self, request):
        if self.fail_next_save is not None:
            error, self.fail_next_save = self.fail_next_save, None
            raise error
        stored = self.requests.get(request.id)
        if stored is None:
            raise NotFoundError(f"Ticket request {request.id} not found")
        if stored.version != request.version:
            raise ConflictError(f"Ticket request {request.id} was modified concurrently")
        saved = copy.deepcopy(request)
        saved.version += 1
        self.requests[request.id] = saved
        self.request_saves.append(saved.status)
        return copy.deepcopy(saved)

    async def list_requests(self, *, owner_id=None, status=None, limit=50, offset=0):
        records = [
            copy.deepcopy(request)
            for request in self.requests.values()
            if (owner_id is None or request.owner_id == owner_id)
            and (status is None or request.status is status)
        ]
        records.sort(key=lambda request: request.created_at, reverse=True)
        return records[offset : offset + limit]

    async def get_ticket(self, ticket_id):
        stored = self.tickets.get(ticket_id)
        return copy.deepcopy(stored) if stored else None

    async def save_ticket(self, ticket):
        if ticket.id not in self.tickets:
            raise NotFoundError(f"Ticket {ticket.id} not found")
        self.tickets[ticket.id] = copy.deepcopy(ticket)
        return ticket

    async def list_tickets_for_request(self, request_id):
        tickets = [
            copy.deepcopy(ticket)
            for ticket in self.tickets.values()
            if ticket.request_id == request_id
        ]
        return sorted(tickets, key=lambda ticket: ticket.position)

    async def list_tickets_needing_sync(self, before, *, limit=200):
        tickets = [
            copy.deepcopy(ticket)
            for ticket in self.tickets.values()
            if ticket.external_id
            and (ticket.last_sync_at is None or ticket.last_sync_at < before)
        ]
        return tickets[:limit]


class FakeTicketingClient:
    """Records calls and answers like the ServiceNow adapter would."""

    def __init__(self):
        self.fail_titles = {}
        self.batch_error = None
        self.states = {}
        self.update_error = None
        self.batches = []
        self.fetched = []
        self.updates = []
        self._counter = 0

    async def create_batch(self, items):
        self.batches.append([dict(item) for item in items])
        if self.batch_error is not None:
            raise self.batch_error
        results = []
        for index, item in enumerate(items):
            title = item.get("title")
            if title in self.fail_titles:
                results.append(BatchItemResult(index=index, error=self.fail_titles[title]))
                continue
            self._counter += 1
            results.append(
                BatchItemResult(
                    index=index,
                    ticket=CreatedTicket(
                        external_id=f"sys-{self._counter}",
                        reference_number=f"RITM{self._counter:07d}",
                    ),
                )
            )
        return results

    async def fetch_status(self, external_id):
        self.fetched.append(external_id)
        state = self.states.get(external_id, "1")
        if isinstance(state, Exception):
            raise state
        if isinstance(state, RemoteTicketState):
            return state
        return RemoteTicketState(external_id=external_id, reference_number=None, state=state)

    async def update_status(self, external_id, new_state, extra_fields=None):
        self.updates.append((external_id, new_state, dict(extra_fields or {})))
        if self.update_error is not None:
            raise self.update_error
        return {"sys_id": external_id, "state": new_state}


class FrozenClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def ticket_store():
    return InMemoryTicketStore()


@pytest.fixture
def ticketing_client():
    return FakeTicketingClient()


@pytest.fixture
def clock():
    return FrozenClock()
