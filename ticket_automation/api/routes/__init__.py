from . import health, ticket_requests

__all__ = ["health", "ticket_requests"]
