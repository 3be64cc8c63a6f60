"""Microsoft Teams client over the Graph API."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from datetime import datetime, timezone
from typing import Any

from ..exceptions import DataIntegrityError
from ..models.repository import CanonicalRecordCreate
from .base import SourceApiClient, Vendor, parse_timestamp

GRAPH_API_ROOT = "https://graph.microsoft.com/v1.0"
GRAPH_MAX_PAGE_SIZE = 50


class TeamsClient(SourceApiClient):
    """Channel messages for every joined team, paged by ``@odata.nextLink``."""

    vendor = Vendor.TEAMS
    default_resources = ("message",)

    async def _collect_all(self, url: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        next_url: str | None = url
        while next_url:
            payload = await self.get_json(next_url)
            items.extend(payload.get("value") or [])
            next_url = payload.get("@odata.nextLink")
        return items

    async def list_channels(self) -> list[tuple[str, str]]:
        configured_teams = self.query_filter("teams")
        if configured_teams:
            team_ids = [str(team) for team in configured_teams]
        else:
            team_ids = [
                str(team["id"])
                for team in await self._collect_all(f"{GRAPH_API_ROOT}/me/joinedTeams")
                if team.get("id")
            ]
        channels: list[tuple[str, str]] = []
        for team_id in team_ids:
            for channel in await self._collect_all(f"{GRAPH_API_ROOT}/teams/{team_id}/channels"):
                if channel.get("id"):
                    channels.append((team_id, str(channel["id"])))
        return channels

    def messages_url(
        self, team_id: str, channel_id: str, updated_after: datetime | None
    ) -> tuple[str, dict[str, Any]]:
        base = f"{GRAPH_API_ROOT}/teams/{team_id}/channels/{channel_id}/messages"
        top = min(self.page_size, GRAPH_MAX_PAGE_SIZE)
        if updated_after is None:
            return base, {"$top": top}
        stamp = updated_after.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return f"{base}/delta", {"$top": top, "$filter": f"lastModifiedDateTime gt {stamp}"}

    async def fetch_pages(
        self, resource: str, *, updated_after: datetime | None
    ) -> AsyncIterator[list[dict[str, Any]]]:
        fetched = 0
        for team_id, channel_id in await self.list_channels():
            url, params = self.messages_url(team_id, channel_id, updated_after)
            next_url: str | None = url
            page_params: dict[str, Any] | None = params
            while next_url:
                if fetched >= self.max_records:
                    self.mark_truncated(resource)
                    return
                payload = await self.get_json(next_url, params=page_params)
                remaining = self.max_records - fetched
                page = payload.get("value") or []
                messages = [
                    {**message, "teamId": team_id, "channelId": channel_id}
                    for message in page[:remaining]
                ]
                if messages:
                    yield messages
                fetched += len(messages)
                if len(page) > remaining:
                    self.mark_truncated(resource)
                    return
                # nextLink already carries the query string
                next_url = payload.get("@odata.nextLink")
                page_params = None

    def normalize(self, resource: str, raw: Mapping[str, Any]) -> CanonicalRecordCreate:
        message_id = raw.get("id")
        channel_id = raw.get("channelId") or (raw.get("channelIdentity") or {}).get("channelId")
        if not message_id or not channel_id:
            raise DataIntegrityError("Teams message is missing 'id' or channel identity")
        created = parse_timestamp(raw.get("createdDateTime"))
        if created is None:
            raise DataIntegrityError(f"Teams message {message_id} has no createdDateTime")

        sender = (raw.get("from") or {}).get("user") or {}
        reply_to = raw.get("replyToId")
        return CanonicalRecordCreate(
            entity_type="message",
            external_id=f"{channel_id}:{message_id}",
            occurred_at=created,
            source_updated_at=parse_timestamp(raw.get("lastModifiedDateTime")) or created,
            actor_id=sender.get("id"),
            fields={
                "teamId": raw.get("teamId"),
                "channelId": channel_id,
                "fromUserId": sender.get("id"),
                "fromUserName": sender.get("displayName"),
                "messageType": raw.get("messageType"),
                "importance": raw.get("importance"),
                "subject": raw.get("subject"),
                "replyToId": reply_to,
                "isReply": bool(reply_to),
                "reactionCount": len(raw.get("reactions") or []),
                "deleted": raw.get("deletedDateTime") is not None,
            },
        )
