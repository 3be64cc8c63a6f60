"""Jira Cloud REST v3 client."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from datetime import datetime, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..exceptions import ConfigurationError, DataIntegrityError
from ..models.repository import CanonicalRecordCreate
from .base import SourceApiClient, Vendor, parse_timestamp, require

JIRA_API_ROOT = "https://api.atlassian.com/ex/jira"
JQL_TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M"
STORY_POINT_FIELDS = ("customfield_10016", "customfield_10026", "storyPoints")


def _name(value: Any) -> Any:
    if isinstance(value, Mapping):
        return value.get("name") or value.get("displayName") or value.get("value")
    return value


class JiraClient(SourceApiClient):
    """Issue search over ``/rest/api/3/search/jql`` with token-based pagination."""

    vendor = Vendor.JIRA
    default_resources = ("issue",)
    ordered_by_update = True

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._user_timezone: tzinfo | None = None

    @property
    def base_url(self) -> str:
        cloud_id = (self.connection.oauth_metadata or {}).get("cloud_id")
        if not cloud_id:
            raise ConfigurationError(
                f"Jira connection '{self.connection.id}' has no cloud_id in its OAuth metadata"
            )
        return f"{JIRA_API_ROOT}/{cloud_id}/rest/api/3"

    async def user_timezone(self) -> tzinfo:
        """Timezone Jira uses to read JQL dates: the API user's profile zone, else UTC."""

        if self._user_timezone is None:
            payload = await self.get_json(f"{self.base_url}/myself")
            name = payload.get("timeZone")
            try:
                self._user_timezone = ZoneInfo(name) if name else timezone.utc
            except (ZoneInfoNotFoundError, ValueError):
                self.log.warning(
                    "Unknown Jira profile timezone %r; filtering in UTC",
                    name,
                    extra={"status": "fallback"},
                )
                self._user_timezone = timezone.utc
        return self._user_timezone

    def build_jql(self, updated_after: datetime | None, zone: tzinfo = timezone.utc) -> str:
        clauses: list[str] = []
        projects = self.query_filter("projects") or []
        if projects:
            clauses.append(f"project in ({', '.join(str(p) for p in projects)})")
        if updated_after is not None:
            # JQL dates carry no offset and are read in the API user's timezone.
            stamp = updated_after.astimezone(zone).strftime(JQL_TIMESTAMP_FORMAT)
            clauses.append(f'updated >= "{stamp}"')
        extra = self.query_filter("jql")
        if extra:
            clauses.append(f"({extra})")
        # /search/jql rejects unbounded queries
        if not clauses:
            clauses.append("created is not EMPTY")
        return f"{' AND '.join(clauses)} ORDER BY updated ASC"

    async def fetch_pages(
        self, resource: str, *, updated_after: datetime | None
    ) -> AsyncIterator[list[dict[str, Any]]]:
        url = f"{self.base_url}/search/jql"
        zone = await self.user_timezone() if updated_after is not None else timezone.utc
        jql = self.build_jql(updated_after, zone)
        fetched = 0
        next_token: str | None = None
        while True:
            if fetched >= self.max_records:
                self.mark_truncated(resource)
                return
            limit = min(self.page_size, self.max_records - fetched, 100)
            params: dict[str, Any] = {"jql": jql, "maxResults": limit, "fields": "*all"}
            if next_token:
                params["nextPageToken"] = next_token
            payload = await self.get_json(url, params=params)
            issues = payload.get("issues") or []
            if issues:
                yield issues
            fetched += len(issues)
            next_token = payload.get("nextPageToken")
            if not issues or payload.get("isLast", True) or not next_token:
                return

    def normalize(self, resource: str, raw: Mapping[str, Any]) -> CanonicalRecordCreate:
        issue_id = require(raw, "id", entity_type="issue")
        fields = raw.get("fields")
        if not isinstance(fields, Mapping):
            raise DataIntegrityError(f"issue {raw.get('key', issue_id)} has no fields")
        created = parse_timestamp(fields.get("created"))
        if created is None:
            raise DataIntegrityError(f"issue {raw.get('key', issue_id)} has no creation timestamp")
        resolved = parse_timestamp(fields.get("resolutiondate"))

        assignee = fields.get("assignee") or {}
        status = fields.get("status") or {}
        story_points = next(
            (fields[name] for name in STORY_POINT_FIELDS if fields.get(name) is not None), None
        )
        cycle_time_hours = (
            round((resolved - created).total_seconds() / 3600, 2) if resolved else None
        )
        return CanonicalRecordCreate(
            entity_type="issue",
            external_id=str(issue_id),
            occurred_at=created,
            source_updated_at=parse_timestamp(fields.get("updated")),
            actor_id=assignee.get("accountId") if isinstance(assignee, Mapping) else None,
            fields={
                "key": raw.get("key"),
                "summary": fields.get("summary"),
                "issueType": _name(fields.get("issuetype")),
                "status": _name(status),
                "statusCategory": (
                    _name(status.get("statusCategory")) if isinstance(status, Mapping) else None
                ),
                "priority": _name(fields.get("priority")),
                "assignee": _name(assignee) if assignee else None,
                "reporter": _name(fields.get("reporter")),
                "resolution": _name(fields.get("resolution")),
                "project": (fields.get("project") or {}).get("key"),
                "labels": list(fields.get("labels") or []),
                "storyPoints": story_points,
                "resolvedAt": resolved.isoformat() if resolved else None,
                "cycleTimeHours": cycle_time_hours,
            },
        )
