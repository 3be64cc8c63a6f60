"""Slack Web API client."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from datetime import datetime
from typing import Any

from ..exceptions import (
    AuthenticationError,
    DataIntegrityError,
    SourceApiError,
    TransientNetworkError,
)
from ..models.repository import CanonicalRecordCreate
from .base import SourceApiClient, Vendor, parse_timestamp

SLACK_API_ROOT = "https://slack.com/api"
AUTH_ERROR_CODES = frozenset(
    {"invalid_auth", "not_authed", "token_expired", "token_revoked", "account_inactive"}
)


class SlackClient(SourceApiClient):
    """Channel discovery plus cursor-paginated ``conversations.history``."""

    vendor = Vendor.SLACK
    default_resources = ("message",)

    async def get_json(self, url: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        payload = await super().get_json(url, params)
        if payload.get("ok", False):
            return payload
        error = str(payload.get("error") or "unknown_error")
        if error in AUTH_ERROR_CODES:
            raise AuthenticationError(
                f"Slack rejected credentials: {error}", connection_id=self.connection.id
            )
        if error == "ratelimited":
            raise TransientNetworkError("Slack rate limit exceeded", status_code=429)
        raise SourceApiError(f"Slack API error: {error}")

    async def list_channels(self) -> list[str]:
        configured = self.query_filter("channels")
        if configured:
            return [str(channel) for channel in configured]

        channels: list[str] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {
                "types": "public_channel,private_channel",
                "exclude_archived": "true",
                "limit": 200,
            }
            if cursor:
                params["cursor"] = cursor
            payload = await self.get_json(f"{SLACK_API_ROOT}/conversations.list", params)
            channels.extend(
                str(channel["id"])
                for channel in payload.get("channels") or []
                if channel.get("id") and channel.get("is_member", True)
            )
            cursor = (payload.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return channels

    async def fetch_pages(
        self, resource: str, *, updated_after: datetime | None
    ) -> AsyncIterator[list[dict[str, Any]]]:
        fetched = 0
        for channel in await self.list_channels():
            cursor: str | None = None
            while True:
                if fetched >= self.max_records:
                    self.mark_truncated(resource)
                    return
                params: dict[str, Any] = {
                    "channel": channel,
                    "limit": min(self.page_size, self.max_records - fetched),
                }
                if updated_after is not None:
                    params["oldest"] = f"{updated_after.timestamp():.6f}"
                if cursor:
                    params["cursor"] = cursor
                payload = await self.get_json(f"{SLACK_API_ROOT}/conversations.history", params)
                messages = [
                    {**message, "channel": channel} for message in payload.get("messages") or []
                ]
                if messages:
                    yield messages
                fetched += len(messages)
                cursor = (payload.get("response_metadata") or {}).get("next_cursor")
                if not messages or not payload.get("has_more") or not cursor:
                    break

    def normalize(self, resource: str, raw: Mapping[str, Any]) -> CanonicalRecordCreate:
        ts = raw.get("ts")
        channel = raw.get("channel")
        if not ts or not channel:
            raise DataIntegrityError("Slack message is missing 'ts' or 'channel'")
        posted_at = parse_timestamp(ts)
        if posted_at is None:
            raise DataIntegrityError(f"Slack message {ts} has an unparseable timestamp")

        thread_ts = raw.get("thread_ts")
        thread_started = parse_timestamp(thread_ts) if thread_ts and thread_ts != ts else None
        response_minutes = (
            round((posted_at - thread_started).total_seconds() / 60, 2) if thread_started else None
        )
        edited = raw.get("edited") or {}
        return CanonicalRecordCreate(
            entity_type="message",
            external_id=f"{channel}:{ts}",
            occurred_at=posted_at,
            source_updated_at=parse_timestamp(edited.get("ts")) or posted_at,
            actor_id=raw.get("user") or raw.get("bot_id"),
            fields={
                "channelId": channel,
                "userId": raw.get("user"),
                "subtype": raw.get("subtype"),
                "isBot": bool(raw.get("bot_id")),
                "threadTs": thread_ts,
                "replyCount": raw.get("reply_count", 0),
                "reactionCount": sum(r.get("count", 0) for r in raw.get("reactions") or []),
                "textLength": len(raw.get("text") or ""),
                "responseTimeMinutes": response_minutes,
            },
        )
