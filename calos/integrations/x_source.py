"""X (Twitter) integration — mentions as an inbound monitoring source.

Reads mentions of the authenticated account through the v2 REST API with
an app bearer token. The same account's mentions are delivered to every
Telegram user listed in X_MONITOR_USER_IDS.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx

from calos.data.models import InboundMessage, MessageSourceKind
from calos.ports.source_port import SourceError

logger = logging.getLogger(__name__)

_API_BASE = "https://api.twitter.com/2/"
_TIMEOUT_SECONDS = 10


def to_inbound_message(tweet: dict, users_by_id: dict[str, dict]) -> InboundMessage:
    author = users_by_id.get(tweet.get("author_id", ""), {})
    username = author.get("username", "unknown")
    metrics = tweet.get("public_metrics", {}) or {}
    return InboundMessage(
        external_id=tweet["id"],
        sender=f"@{username}",
        subject=None,
        content=tweet.get("text", ""),
        created_at=tweet.get("created_at", ""),
        metadata={
            "author_id": tweet.get("author_id"),
            "likes": metrics.get("like_count", 0),
            "replies": metrics.get("reply_count", 0),
            "retweets": metrics.get("retweet_count", 0),
            "url": f"https://twitter.com/{username}/status/{tweet['id']}",
        },
    )


class XMentionsSource:
    """Recent mentions of the bearer token's account."""

    source = MessageSourceKind.SOCIAL

    def __init__(
        self,
        bearer_token: str | None = None,
        user_ids: list[int] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if bearer_token is None or user_ids is None:
            from calos.config import settings
            bearer_token = bearer_token if bearer_token is not None else settings.X_BEARER_TOKEN
            user_ids = user_ids if user_ids is not None else settings.X_MONITOR_USER_IDS
        self._bearer_token = bearer_token
        self._user_ids = list(user_ids)
        self._transport = transport
        self._account_id: str | None = None

    def account_ids(self) -> list[int]:
        if not self._bearer_token:
            return []
        return list(self._user_ids)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=_API_BASE,
            timeout=_TIMEOUT_SECONDS,
            headers={"Authorization": f"Bearer {self._bearer_token}"},
            transport=self._transport,
        )

    async def fetch_recent(
        self, user_id: int, since: datetime, max_results: int,
    ) -> list[InboundMessage]:
        if not self._bearer_token:
            raise SourceError("X_BEARER_TOKEN is not configured")

        if since.tzinfo is None:
            since = since.astimezone()
        start_time = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        try:
            async with self._client() as client:
                if self._account_id is None:
                    me = await client.get("users/me")
                    me.raise_for_status()
                    self._account_id = me.json()["data"]["id"]

                resp = await client.get(
                    f"users/{self._account_id}/mentions",
                    params={
                        "tweet.fields": "created_at,public_metrics,author_id",
                        "expansions": "author_id",
                        "user.fields": "username",
                        # the endpoint rejects values below 5
                        "max_results": max(5, min(max_results, 100)),
                        "start_time": start_time,
                    },
                )
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise SourceError(f"X mentions fetch failed: {exc}") from exc

        users_by_id = {u["id"]: u for u in body.get("includes", {}).get("users", [])}
        mentions = [to_inbound_message(t, users_by_id) for t in body.get("data", []) or []]
        logger.info("Fetched %d X mention(s) for user %d", len(mentions), user_id)
        return mentions[:max_results]
