from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from ticket_automation.core.database import Database
from ticket_automation.core.errors import ConflictError, PersistenceError
from ticket_automation.models.tickets import (
    ExternalTicket,
    RequestStatus,
    TicketRequest,
    TicketStatus,
)
from ticket_automation.repositories import ticket_requests as repo
from ticket_automation.services.ticket_sync import TicketSyncService


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def sqlite_db(anyio_backend, tmp_path, monkeypatch):
    test_db = Database()
    test_db._use_sqlite = True
    test_db._get_sqlite_path = lambda: tmp_path / "tickets.db"
    await test_db.run_migrations()
    monkeypatch.setattr(repo, "db", test_db)
    yield test_db
    await test_db.disconnect()


def _request():
    created = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    return TicketRequest(
        owner_id="user-1",
        title="Onboarding",
        description="New starter",
        request_data={"department": "finance"},
        created_at=created,
        updated_at=created,
    )


@pytest.mark.anyio
async def test_migrations_are_applied_once(sqlite_db):
    await sqlite_db.run_migrations()

    rows = await sqlite_db.fetch_all("SELECT name FROM migrations")
    assert [row["name"] for row in rows] == ["001_ticket_requests.sql"]


@pytest.mark.anyio
async def test_request_round_trip_with_optimistic_locking(sqlite_db):
    request = _request()
    ticket = ExternalTicket(request_id=request.id, title="Create AD account", description="")
    await repo.create_request_with_tickets(request, [ticket])

    loaded = await repo.get_request(request.id)
    assert loaded.version == 1
    assert loaded.request_data == {"department": "finance"}
    assert loaded.created_at == request.created_at

    saved = await repo.save_request(replace(loaded, status=RequestStatus.PROCESSING))
    assert saved.version == 2
    assert (await repo.get_request(request.id)).status is RequestStatus.PROCESSING

    with pytest.raises(ConflictError):
        await repo.save_request(replace(loaded, status=RequestStatus.CANCELLED))
    assert (await repo.get_request(request.id)).status is RequestStatus.PROCESSING


@pytest.mark.anyio
async def test_ticket_saves_are_last_writer_wins(sqlite_db):
    request = _request()
    ticket = ExternalTicket(request_id=request.id, title="Create AD account", description="")
    await repo.create_request_with_tickets(request, [ticket])

    first = await repo.get_ticket(ticket.id)
    second = await repo.get_ticket(ticket.id)
    await repo.save_ticket(replace(first, status=TicketStatus.IN_PROGRESS))
    await repo.save_ticket(replace(second, status=TicketStatus.CLOSED))
    await repo.save_ticket(replace(second, status=TicketStatus.CLOSED))

    assert (await repo.get_ticket(ticket.id)).status is TicketStatus.CLOSED


@pytest.mark.anyio
async def test_failed_insert_rolls_back_whole_request(sqlite_db):
    request = _request()
    first = ExternalTicket(request_id=request.id, title="A", description="")
    duplicate = ExternalTicket(id=first.id, request_id=request.id, title="B", description="")

    with pytest.raises(PersistenceError):
        await repo.create_request_with_tickets(request, [first, duplicate])

    assert await repo.get_request(request.id) is None
    assert await repo.list_tickets_for_request(request.id) == []


@pytest.mark.anyio
async def test_sync_engine_against_sqlite_store(sqlite_db, ticketing_client, clock):
    service = TicketSyncService(ticketing_client, repo.SqlTicketStore(), clock=clock)
    ticketing_client.fail_titles = {"Order laptop": "Invalid category"}

    result = await service.submit_and_create(
        "user-1",
        {
            "title": "Onboarding",
            "description": "New starter",
            "tickets": [{"title": "Create AD account"}, {"title": "Order laptop"}],
        },
    )
    assert result.request.status is RequestStatus.FAILED

    ticketing_client.fail_titles = {}
    retried = await service.retry(result.request_id)
    assert retried.status is RequestStatus.COMPLETED
    assert retried.retry_count == 1

    clock.advance(timedelta(minutes=10))
    ticketing_client.states = {"sys-1": "5", "sys-2": "2"}
    summary = await service.sync_stale()
    assert summary.synced == 2

    first, second = await repo.list_tickets_for_request(result.request_id)
    assert first.status is TicketStatus.CLOSED
    assert first.closed_in_external_at == clock.now
    assert second.status is TicketStatus.IN_PROGRESS
    assert await repo.list_tickets_needing_sync(clock.now - timedelta(minutes=5)) == []
