import pytest

from ticket_automation.models.tickets import TicketStatus
from ticket_automation.services import status_mapper


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1", TicketStatus.NEW),
        ("2", TicketStatus.IN_PROGRESS),
        ("3", TicketStatus.ON_HOLD),
        ("4", TicketStatus.RESOLVED),
        ("5", TicketStatus.CLOSED),
        ("6", TicketStatus.CANCELLED),
        ("new", TicketStatus.NEW),
        ("in_progress", TicketStatus.IN_PROGRESS),
        ("on_hold", TicketStatus.ON_HOLD),
        ("resolved", TicketStatus.RESOLVED),
        ("closed", TicketStatus.CLOSED),
        ("cancelled", TicketStatus.CANCELLED),
        ("NEW", TicketStatus.NEW),
        ("IN_PROGRESS", TicketStatus.IN_PROGRESS),
        ("ON_HOLD", TicketStatus.ON_HOLD),
        ("RESOLVED", TicketStatus.RESOLVED),
        ("CLOSED", TicketStatus.CLOSED),
        ("CANCELLED", TicketStatus.CANCELLED),
        (4, TicketStatus.RESOLVED),
        (2.0, TicketStatus.IN_PROGRESS),
        ("In Progress", TicketStatus.IN_PROGRESS),
        ("on-hold", TicketStatus.ON_HOLD),
        (" Closed ", TicketStatus.CLOSED),
        ({"value": "5", "display_value": "Closed"}, TicketStatus.CLOSED),
    ],
)
def test_map_remote_state_known_values(raw, expected):
    assert status_mapper.map_remote_state(raw) is expected
    assert status_mapper.is_known_state(raw)


@pytest.mark.parametrize("raw", [None, "", "99", "awaiting approval", True, {"value": ""}])
def test_unknown_states_default_to_new(raw):
    assert status_mapper.map_remote_state(raw) is TicketStatus.NEW
    assert not status_mapper.is_known_state(raw)


def test_to_remote_state_returns_numeric_codes():
    assert status_mapper.to_remote_state(TicketStatus.CANCELLED) == "6"
    assert status_mapper.to_remote_state(TicketStatus.RESOLVED) == "4"
    assert status_mapper.to_remote_state("in_progress") == "2"
