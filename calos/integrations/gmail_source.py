"""Gmail integration — unread mail as an inbound monitoring source.

Implements MessageSource for the email channel. The Google API client is
synchronous, so each fetch runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Callable

from calos.data.db import UserDB
from calos.data.models import InboundMessage, MessageSourceKind
from calos.integrations.google_auth import get_gmail_service_for_user
from calos.ports.source_port import SourceError

logger = logging.getLogger(__name__)

BODY_LIMIT = 5000


def _header(headers: list[dict], name: str, default: str = "") -> str:
    for h in headers:
        if h.get("name", "").lower() == name.lower():
            return h.get("value", default)
    return default


def _decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def extract_body(message: dict) -> str:
    """Plain-text body from the payload or its text/plain part, else the snippet."""
    payload = message.get("payload", {})
    body = message.get("snippet", "")
    if payload.get("body", {}).get("data"):
        body = _decode(payload["body"]["data"])
    else:
        for part in payload.get("parts", []) or []:
            if part.get("mimeType") == "text/plain" and part.get("body", {}).get("data"):
                body = _decode(part["body"]["data"])
                break
    return body[:BODY_LIMIT]


def to_inbound_message(message: dict) -> InboundMessage:
    headers = message.get("payload", {}).get("headers", [])
    raw_date = _header(headers, "Date")
    try:
        created_at = parsedate_to_datetime(raw_date).isoformat() if raw_date else ""
    except (TypeError, ValueError):
        created_at = ""
    return InboundMessage(
        external_id=message["id"],
        sender=_header(headers, "From", "Unknown"),
        subject=_header(headers, "Subject", "(No Subject)"),
        content=extract_body(message),
        created_at=created_at,
        metadata={
            "snippet": message.get("snippet", ""),
            "labels": message.get("labelIds", []),
            "thread_id": message.get("threadId"),
        },
    )


class GmailSource:
    """Unread Gmail messages for every user who connected Gmail."""

    source = MessageSourceKind.EMAIL

    def __init__(
        self,
        user_db: UserDB,
        service_factory: Callable[[str], tuple[object, str | None]] = get_gmail_service_for_user,
    ) -> None:
        self._user_db = user_db
        self._service_factory = service_factory

    def account_ids(self) -> list[int]:
        return [u.telegram_user_id for u in self._user_db.users_with_gmail()]

    async def fetch_recent(
        self, user_id: int, since: datetime, max_results: int,
    ) -> list[InboundMessage]:
        user = self._user_db.get_user(user_id)
        if user is None or not user.gmail_token_json:
            raise SourceError(f"User {user_id} has not connected Gmail")
        return await asyncio.to_thread(self._fetch_sync, user_id, user.gmail_token_json, since, max_results)

    def _fetch_sync(
        self, user_id: int, token_json: str, since: datetime, max_results: int,
    ) -> list[InboundMessage]:
        try:
            service, refreshed = self._service_factory(token_json)
            if refreshed:
                self._user_db.set_gmail_token(user_id, refreshed)

            listing = service.users().messages().list(
                userId="me",
                q=f"is:unread after:{int(since.timestamp())}",
                maxResults=max_results,
            ).execute()
        except Exception as exc:
            raise SourceError(f"Gmail listing failed for user {user_id}: {exc}") from exc

        results: list[InboundMessage] = []
        for ref in listing.get("messages", []) or []:
            try:
                detail = service.users().messages().get(
                    userId="me", id=ref["id"], format="full",
                ).execute()
                results.append(to_inbound_message(detail))
            except Exception as exc:
                logger.error("Error fetching Gmail message %s for user %d: %s", ref.get("id"), user_id, exc)

        logger.info("Fetched %d Gmail message(s) for user %d", len(results), user_id)
        return results
