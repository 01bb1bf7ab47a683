from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import httpx

from ticket_automation.core.config import Settings, get_settings
from ticket_automation.core.errors import RemoteRejection, TransportError
from ticket_automation.core.logging import log_debug, log_error, log_info

DEFAULT_TIMEOUT = 30.0

_TABLE_PATH = "/api/now/table/sc_req_item"
_BATCH_PATH = "/api/x_ticket_automation/multiple_ticket_creation"
_STATUS_FIELDS = (
    "sys_id,number,short_description,state,priority,assignment_group,"
    "assigned_to,opened_at,closed_at"
)
_MAPPED_INPUT_KEYS = frozenset({"title", "assignmentGroup"})


class ServiceNowConfigurationError(RuntimeError):
    """Raised when ServiceNow integration settings are incomplete."""


@dataclass(slots=True)
class CreatedTicket:
    external_id: str
    reference_number: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BatchItemResult:
    """Outcome of one entry in a batch create call, in input order."""

    index: int
    ticket: CreatedTicket | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.ticket is not None


@dataclass(slots=True)
class RemoteTicketState:
    external_id: str
    reference_number: str | None
    state: Any
    assignee: str | None = None
    opened_at: datetime | None = None
    closed_at: datetime | None = None


def _truncate_body(body: str | None, limit: int = 500) -> str | None:
    if body is None:
        return None
    if len(body) <= limit:
        return body
    return body[: limit - 3] + "..."


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Mapping):
        value = value.get("display_value") or value.get("value")
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def _parse_datetime(value: Any) -> datetime | None:
    text = _clean_text(value)
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    for candidate in (text, text.replace(" ", "T", 1)):
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def _error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping):
            message = _clean_text(error.get("message"))
            detail = _clean_text(error.get("detail"))
            if message and detail:
                return f"{message}: {detail}"
            if message or detail:
                return message or detail  # type: ignore[return-value]
        elif error:
            return str(error)
        for key in ("message", "detail"):
            text = _clean_text(payload.get(key))
            if text:
                return text
    return fallback


def _unwrap_result(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, Mapping):
        return None
    result = payload.get("result", payload)
    if isinstance(result, Mapping):
        return dict(result)
    return None


def _created_ticket_from(payload: Any) -> CreatedTicket | None:
    result = _unwrap_result(payload)
    if not result:
        return None
    external_id = _clean_text(result.get("sys_id"))
    reference_number = _clean_text(result.get("number"))
    if not external_id or not reference_number:
        return None
    return CreatedTicket(external_id=external_id, reference_number=reference_number, fields=result)


def _extract_batch_items(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in ("result", "tickets", "data"):
            nested = payload.get(key)
            if isinstance(nested, list):
                return nested
    return []


def build_ticket_payload(data: Mapping[str, Any]) -> dict[str, Any]:
    """Translate internal ticket fields into the remote create body."""
    body: dict[str, Any] = {
        "short_description": data.get("title"),
        "description": data.get("description"),
        "priority": data.get("priority"),
        "category": data.get("category"),
        "subcategory": data.get("subcategory"),
        "assignment_group": data.get("assignment_group") or data.get("assignmentGroup"),
    }
    for key, value in data.items():
        if key in _MAPPED_INPUT_KEYS or key in body:
            continue
        body[key] = value
    return {key: value for key, value in body.items() if value is not None}


class ServiceNowClient:
    """Async adapter for the ServiceNow table API and the batch creation endpoint.

    The client does not retry; every call either returns or raises
    :class:`TransportError` / :class:`RemoteRejection` once. Retry policy is
    owned by the sync engine.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = str(base_url or "").strip().rstrip("/")
        if not self._base_url:
            raise ServiceNowConfigurationError("ServiceNow base URL is not configured")
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            auth=httpx.BasicAuth(username, password),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ServiceNowClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
    ) -> Any:
        log_debug("Calling ServiceNow API", method=method, path=path)
        try:
            # httpx applies its timeout to each phase; wait_for bounds the whole call
            response = await asyncio.wait_for(
                self._client.request(method, path, params=params, json=json),
                timeout=self._timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            log_error("ServiceNow API request timed out", method=method, path=path, error=str(exc))
            raise TransportError(f"ServiceNow request timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            log_error("ServiceNow API request failed", method=method, path=path, error=str(exc))
            raise TransportError(f"ServiceNow request failed: {exc}") from exc

        try:
            data = response.json() if response.content else None
        except ValueError:
            data = response.text

        if response.status_code >= 400:
            log_error(
                "ServiceNow API responded with error",
                method=method,
                path=path,
                status=response.status_code,
                body=_truncate_body(response.text),
            )
            message = _error_message(data, f"ServiceNow API responded with {response.status_code}")
            if response.status_code >= 500:
                raise TransportError(message)
            raise RemoteRejection(message, status_code=response.status_code)

        log_debug("ServiceNow API response", path=path, status=response.status_code)
        return data

    async def create_single(self, data: Mapping[str, Any]) -> CreatedTicket:
        payload = await self._request("POST", _TABLE_PATH, json=build_ticket_payload(data))
        ticket = _created_ticket_from(payload)
        if ticket is None:
            raise RemoteRejection("ServiceNow response did not include sys_id and number")
        log_info(
            "ServiceNow ticket created",
            external_id=ticket.external_id,
            reference_number=ticket.reference_number,
        )
        return ticket

    async def create_batch(self, items: Sequence[Mapping[str, Any]]) -> list[BatchItemResult]:
        """Create several tickets in one call; one result per input item, in order."""
        if not items:
            return []
        payload = await self._request(
            "POST",
            _BATCH_PATH,
            json={"tickets": [build_ticket_payload(item) for item in items]},
        )
        entries = _extract_batch_items(payload)
        results: list[BatchItemResult] = []
        for index in range(len(items)):
            entry = entries[index] if index < len(entries) else None
            if entry is None:
                results.append(BatchItemResult(index=index, error="No response from ServiceNow"))
                continue
            ticket = _created_ticket_from(entry)
            if ticket is not None:
                results.append(BatchItemResult(index=index, ticket=ticket))
                continue
            results.append(
                BatchItemResult(
                    index=index,
                    error=_error_message(entry, "ServiceNow did not return a ticket for this item"),
                )
            )
        created = sum(1 for result in results if result.ok)
        log_info(
            "ServiceNow batch creation finished",
            requested=len(items),
            created=created,
            failed=len(items) - created,
        )
        return results

    async def fetch_status(self, external_id: str) -> RemoteTicketState:
        payload = await self._request(
            "GET",
            f"{_TABLE_PATH}/{external_id}",
            params={"sysparm_fields": _STATUS_FIELDS},
        )
        result = _unwrap_result(payload)
        if not result:
            raise RemoteRejection(f"ServiceNow returned no record for {external_id}")
        return RemoteTicketState(
            external_id=_clean_text(result.get("sys_id")) or external_id,
            reference_number=_clean_text(result.get("number")),
            state=result.get("state"),
            assignee=_clean_text(result.get("assigned_to")),
            opened_at=_parse_datetime(result.get("opened_at")),
            closed_at=_parse_datetime(result.get("closed_at")),
        )

    async def update_status(
        self,
        external_id: str,
        new_state: str,
        extra_fields: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"state": new_state}
        if extra_fields:
            body.update(extra_fields)
        payload = await self._request("PATCH", f"{_TABLE_PATH}/{external_id}", json=body)
        return _unwrap_result(payload) or {}

    async def health_check(self) -> bool:
        try:
            await self._request("GET", _TABLE_PATH, params={"sysparm_limit": 1})
        except (TransportError, RemoteRejection) as exc:
            log_error("ServiceNow connection test failed", error=str(exc))
            return False
        return True


def build_client(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ServiceNowClient:
    settings = settings or get_settings()
    base_url = str(settings.servicenow_base_url or "").strip()
    if not base_url:
        raise ServiceNowConfigurationError("ServiceNow base URL is not configured")
    if not settings.servicenow_username or not settings.servicenow_password:
        raise ServiceNowConfigurationError("ServiceNow credentials are not configured")
    return ServiceNowClient(
        base_url,
        settings.servicenow_username,
        settings.servicenow_password,
        timeout=settings.servicenow_timeout,
        transport=transport,
    )
