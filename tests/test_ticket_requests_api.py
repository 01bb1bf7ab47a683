import pytest
from fastapi.testclient import TestClient

from ticket_automation.api.dependencies.database import require_database
from ticket_automation.core.errors import PersistenceError, TransportError
from ticket_automation.main import app
from ticket_automation.services.ticket_sync import TicketSyncService


@pytest.fixture
def service(ticketing_client, ticket_store, clock):
    return TicketSyncService(ticketing_client, ticket_store, clock=clock)


@pytest.fixture
def client(monkeypatch, service):
    async def _no_database():
        return None

    app.dependency_overrides[require_database] = _no_database
    monkeypatch.setattr(app.state, "ticket_sync_service", service, raising=False)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(require_database, None)


HEADERS = {"X-Principal-Id": "user-1"}

PAYLOAD = {
    "title": "Onboarding",
    "description": "New starter in finance",
    "priority": "High",
    "tickets": [
        {"title": "Create AD account", "assignmentGroup": "Identity"},
        {"title": "Order laptop"},
    ],
}


def _submit(client, payload=None, headers=HEADERS):
    return client.post("/api/ticket-requests", json=payload or PAYLOAD, headers=headers)


def test_submit_requires_principal(client):
    response = _submit(client, headers={})

    assert response.status_code == 401


def test_submit_returns_created_tickets(client):
    response = _submit(client)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "completed"
    assert body["failure_reason"] is None
    assert [ticket["title"] for ticket in body["tickets"]] == ["Create AD account", "Order laptop"]


def test_submit_without_tickets_is_bad_request(client):
    response = _submit(client, {**PAYLOAD, "tickets": []})

    assert response.status_code == 400
    assert "At least one ticket" in response.json()["detail"]


def test_submit_transport_failure_is_bad_gateway(client, ticketing_client, ticket_store):
    ticketing_client.batch_error = TransportError("ServiceNow request timed out after 30.0s")

    response = _submit(client)

    assert response.status_code == 502
    (stored,) = ticket_store.requests.values()
    assert stored.status.value == "failed"


def test_get_request_and_tickets(client, monkeypatch):
    from ticket_automation.api.routes import ticket_requests as routes

    class _Settings:
        servicenow_base_url = "https://example.service-now.com/"

    monkeypatch.setattr(routes, "get_settings", lambda: _Settings())
    request_id = _submit(client).json()["request_id"]

    detail = client.get(f"/api/ticket-requests/{request_id}", headers=HEADERS)
    tickets = client.get(f"/api/ticket-requests/{request_id}/tickets", headers=HEADERS)

    assert detail.status_code == 200
    assert detail.json()["status"] == "completed"
    assert detail.json()["can_retry"] is False
    assert tickets.status_code == 200
    first = tickets.json()[0]
    assert first["external_id"] == "sys-1"
    assert first["assignment_group"] == "Identity"
    assert first["external_url"] == (
        "https://example.service-now.com/nav_to.do?uri=sc_req_item.do?sys_id=sys-1"
    )


def test_other_principals_cannot_see_request(client):
    request_id = _submit(client).json()["request_id"]

    response = client.get(
        f"/api/ticket-requests/{request_id}", headers={"X-Principal-Id": "user-2"}
    )

    assert response.status_code == 404


def test_unknown_request_is_not_found(client):
    response = client.get("/api/ticket-requests/missing", headers=HEADERS)

    assert response.status_code == 404


def test_list_requests_for_principal(client):
    _submit(client)
    _submit(client, headers={"X-Principal-Id": "user-2"})

    response = client.get("/api/ticket-requests", params={"status": "completed"}, headers=HEADERS)

    assert response.status_code == 200
    assert [item["owner_id"] for item in response.json()] == ["user-1"]


def test_retry_failed_request(client, ticketing_client):
    ticketing_client.fail_titles = {"Order laptop": "Invalid category"}
    request_id = _submit(client).json()["request_id"]
    ticketing_client.fail_titles = {}

    response = client.post(f"/api/ticket-requests/{request_id}/retry", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["retry_count"] == 1


def test_retry_completed_request_conflicts(client):
    request_id = _submit(client).json()["request_id"]

    response = client.post(f"/api/ticket-requests/{request_id}/retry", headers=HEADERS)

    assert response.status_code == 409


def test_cancel_completed_request_conflicts(client):
    request_id = _submit(client).json()["request_id"]

    response = client.post(f"/api/ticket-requests/{request_id}/cancel", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["detail"] == "Cannot cancel completed ticket request"


def test_cancel_failed_request_with_remote_cancellation(client, ticketing_client):
    ticketing_client.fail_titles = {"Order laptop": "Invalid category"}
    request_id = _submit(client).json()["request_id"]

    response = client.post(
        f"/api/ticket-requests/{request_id}/cancel",
        json={"cancelRemote": True},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert [update[0] for update in ticketing_client.updates] == ["sys-1"]


def test_sync_request(client, ticketing_client):
    request_id = _submit(client).json()["request_id"]
    ticketing_client.states = {"sys-1": "2", "sys-2": "5"}

    response = client.post(f"/api/ticket-requests/{request_id}/sync", headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"request_id": request_id, "synced_tickets": 2}


def test_store_outage_is_service_unavailable(client, ticket_store, ticketing_client):
    ticketing_client.fail_titles = {"Order laptop": "Invalid category"}
    request_id = _submit(client).json()["request_id"]
    ticket_store.fail_next_save = PersistenceError("Unable to save ticket request: gone away")

    response = client.post(f"/api/ticket-requests/{request_id}/cancel", headers=HEADERS)

    assert response.status_code == 503


def test_routes_unavailable_without_servicenow(monkeypatch):
    async def _no_database():
        return None

    app.dependency_overrides[require_database] = _no_database
    monkeypatch.setattr(app.state, "ticket_sync_service", None, raising=False)
    try:
        response = TestClient(app).get("/api/ticket-requests", headers=HEADERS)
    finally:
        app.dependency_overrides.pop(require_database, None)

    assert response.status_code == 503


def test_health_endpoint(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["message"] == "Service is healthy"


def test_detailed_health_reports_dependencies(client, monkeypatch):
    from unittest.mock import AsyncMock

    from ticket_automation.api.routes import health as health_routes

    class _HealthyDatabase:
        def is_connected(self):
            return True

        async def fetch_one(self, sql, params=None):
            return {"ok": 1}

    remote = AsyncMock()
    remote.health_check = AsyncMock(return_value=False)
    monkeypatch.setattr(health_routes, "db", _HealthyDatabase())
    monkeypatch.setattr(app.state, "servicenow_client", remote, raising=False)

    response = client.get("/health/detailed")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["servicenow"]["status"] == "unhealthy"
    remote.health_check.assert_awaited_once()
