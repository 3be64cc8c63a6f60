"""ServiceNow Table API client."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from datetime import datetime, timezone
from typing import Any

from ..exceptions import DataIntegrityError
from ..models.repository import CanonicalRecordCreate
from .base import SourceApiClient, Vendor, minutes_between, parse_timestamp, require

SERVICENOW_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _value(raw: Mapping[str, Any], name: str) -> Any:
    """Return the raw value of a field fetched with ``sysparm_display_value=all``."""

    field = raw.get(name)
    if isinstance(field, Mapping):
        return field.get("value")
    return field


def _display(raw: Mapping[str, Any], name: str) -> Any:
    field = raw.get(name)
    if isinstance(field, Mapping):
        return field.get("display_value") or field.get("value")
    return field


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ServiceNowClient(SourceApiClient):
    """Offset-paginated reads from ``/api/now/table/{table}``."""

    vendor = Vendor.SERVICENOW
    default_resources = ("incident", "change_request")
    ordered_by_update = True

    def build_query(self, resource: str, updated_after: datetime | None) -> str:
        clauses: list[str] = []
        if updated_after is not None:
            stamp = updated_after.astimezone(timezone.utc).strftime(SERVICENOW_TIMESTAMP_FORMAT)
            # Inclusive so rows sharing the checkpoint second are re-read, not dropped.
            clauses.append(f"sys_updated_on>={stamp}")
        extra = (self.query_filter("tables") or {}).get(resource)
        if extra:
            clauses.append(str(extra))
        clauses.append("ORDERBYsys_updated_on")
        return "^".join(clauses)

    async def fetch_pages(
        self, resource: str, *, updated_after: datetime | None
    ) -> AsyncIterator[list[dict[str, Any]]]:
        url = f"{self.connection.instance_url.rstrip('/')}/api/now/table/{resource}"
        query = self.build_query(resource, updated_after)
        offset = 0
        while True:
            if offset >= self.max_records:
                self.mark_truncated(resource)
                return
            limit = min(self.page_size, self.max_records - offset)
            payload = await self.get_json(
                url,
                params={
                    "sysparm_query": query,
                    "sysparm_limit": limit,
                    "sysparm_offset": offset,
                    "sysparm_display_value": "all",
                    "sysparm_exclude_reference_link": "true",
                },
            )
            results = payload.get("result") or []
            if not results:
                return
            yield results
            offset += len(results)
            if len(results) < limit:
                return

    def normalize(self, resource: str, raw: Mapping[str, Any]) -> CanonicalRecordCreate:
        if resource == "incident":
            return self._normalize_incident(raw)
        if resource == "change_request":
            return self._normalize_change(raw)
        return self._normalize_generic(resource, raw)

    def _base(
        self, entity_type: str, raw: Mapping[str, Any]
    ) -> tuple[str, datetime, datetime | None]:
        sys_id = _value(raw, "sys_id")
        if not sys_id:
            raise DataIntegrityError(f"{entity_type} record is missing required field 'sys_id'")
        created = parse_timestamp(_value(raw, "opened_at")) or parse_timestamp(
            _value(raw, "sys_created_on")
        )
        if created is None:
            raise DataIntegrityError(f"{entity_type} {sys_id} has no parseable creation timestamp")
        return str(sys_id), created, parse_timestamp(_value(raw, "sys_updated_on"))

    def _normalize_incident(self, raw: Mapping[str, Any]) -> CanonicalRecordCreate:
        sys_id, opened_at, updated_at = self._base("incident", raw)
        resolved_at = parse_timestamp(_value(raw, "resolved_at"))
        closed_at = parse_timestamp(_value(raw, "closed_at"))
        fields = {
            "number": _value(raw, "number"),
            "shortDescription": _display(raw, "short_description"),
            "state": _display(raw, "state"),
            "stateCode": _as_int(_value(raw, "state")),
            "priority": _display(raw, "priority"),
            "priorityCode": _as_int(_value(raw, "priority")),
            "impact": _display(raw, "impact"),
            "urgency": _display(raw, "urgency"),
            "category": _display(raw, "category"),
            "assignedTo": _display(raw, "assigned_to"),
            "assignmentGroup": _display(raw, "assignment_group"),
            "caller": _display(raw, "caller_id"),
            "closeCode": _display(raw, "close_code"),
            "openedAt": opened_at.isoformat(),
            "resolvedAt": resolved_at.isoformat() if resolved_at else None,
            "closedAt": closed_at.isoformat() if closed_at else None,
            "durationMinutes": minutes_between(opened_at, resolved_at or closed_at),
        }
        return CanonicalRecordCreate(
            entity_type="incident",
            external_id=sys_id,
            occurred_at=opened_at,
            source_updated_at=updated_at,
            actor_id=_value(raw, "assigned_to") or None,
            fields=fields,
        )

    def _normalize_change(self, raw: Mapping[str, Any]) -> CanonicalRecordCreate:
        sys_id, opened_at, updated_at = self._base("change_request", raw)
        start = parse_timestamp(_value(raw, "start_date"))
        end = parse_timestamp(_value(raw, "end_date"))
        fields = {
            "number": _value(raw, "number"),
            "shortDescription": _display(raw, "short_description"),
            "state": _display(raw, "state"),
            "type": _display(raw, "type"),
            "risk": _display(raw, "risk"),
            "priority": _display(raw, "priority"),
            "assignmentGroup": _display(raw, "assignment_group"),
            "startDate": start.isoformat() if start else None,
            "endDate": end.isoformat() if end else None,
            "durationMinutes": minutes_between(start, end),
        }
        return CanonicalRecordCreate(
            entity_type="change_request",
            external_id=sys_id,
            occurred_at=opened_at,
            source_updated_at=updated_at,
            actor_id=_value(raw, "assigned_to") or None,
            fields=fields,
        )

    def _normalize_generic(self, resource: str, raw: Mapping[str, Any]) -> CanonicalRecordCreate:
        sys_id = require({"sys_id": _value(raw, "sys_id")}, "sys_id", entity_type=resource)
        created = parse_timestamp(_value(raw, "sys_created_on"))
        if created is None:
            raise DataIntegrityError(f"{resource} {sys_id} has no parseable creation timestamp")
        return CanonicalRecordCreate(
            entity_type=resource,
            external_id=str(sys_id),
            occurred_at=created,
            source_updated_at=parse_timestamp(_value(raw, "sys_updated_on")),
            fields={key: _display(raw, key) for key in raw},
        )
