"""Tests for the Gmail and X inbound sources (APIs faked)."""

import base64
from datetime import datetime, timezone

import httpx
import pytest
from unittest.mock import MagicMock

from calos.data.models import MessageSourceKind
from calos.integrations import gmail_source, x_source
from calos.integrations.gmail_source import GmailSource, extract_body
from calos.integrations.x_source import XMentionsSource
from calos.ports.source_port import SourceError

SINCE = datetime(2025, 2, 14, 8, 0, tzinfo=timezone.utc)


def _b64(text):
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _gmail_message(msg_id, body="Please send the report"):
    return {
        "id": msg_id,
        "threadId": "t-" + msg_id,
        "snippet": "Please send...",
        "labelIds": ["UNREAD", "INBOX"],
        "payload": {
            "headers": [
                {"name": "From", "value": "Boss <boss@co.com>"},
                {"name": "Subject", "value": "Report"},
                {"name": "Date", "value": "Fri, 14 Feb 2025 09:30:00 +0000"},
            ],
            "parts": [
                {"mimeType": "text/html", "body": {"data": _b64("<p>html</p>")}},
                {"mimeType": "text/plain", "body": {"data": _b64(body)}},
            ],
        },
    }


def _fake_service(messages, fail_ids=()):
    service = MagicMock()
    api = service.users.return_value.messages.return_value
    api.list.return_value.execute.return_value = {"messages": [{"id": m["id"]} for m in messages]}

    def _get(userId, id, format):
        if id in fail_ids:
            raise RuntimeError("gone")
        request = MagicMock()
        request.execute.return_value = next(m for m in messages if m["id"] == id)
        return request

    api.get.side_effect = _get
    return service


# ---------------------------------------------------------------------------
# Gmail
# ---------------------------------------------------------------------------


class TestGmailParsing:
    def test_plain_part_preferred(self):
        assert extract_body(_gmail_message("1")) == "Please send the report"

    def test_falls_back_to_snippet(self):
        assert extract_body({"snippet": "just a snippet", "payload": {}}) == "just a snippet"

    def test_body_limited(self):
        assert len(extract_body(_gmail_message("1", body="x" * 9000))) == gmail_source.BODY_LIMIT

    def test_to_inbound_message(self):
        msg = gmail_source.to_inbound_message(_gmail_message("abc"))
        assert msg.external_id == "abc"
        assert msg.sender == "Boss <boss@co.com>"
        assert msg.subject == "Report"
        assert msg.created_at == "2025-02-14T09:30:00+00:00"
        assert msg.metadata["thread_id"] == "t-abc"


class TestGmailSource:
    @pytest.mark.asyncio
    async def test_fetch_recent(self, user_db):
        user_db.add_user(1, "Alice")
        user_db.set_gmail_token(1, '{"token": "old"}')
        service = _fake_service([_gmail_message("a"), _gmail_message("b")], fail_ids={"b"})
        source = GmailSource(user_db, service_factory=lambda token: (service, '{"token": "new"}'))

        items = await source.fetch_recent(1, SINCE, 20)

        assert [i.external_id for i in items] == ["a"]
        assert user_db.get_user(1).gmail_token_json == '{"token": "new"}'
        list_kwargs = service.users.return_value.messages.return_value.list.call_args.kwargs
        assert list_kwargs["q"] == f"is:unread after:{int(SINCE.timestamp())}"
        assert list_kwargs["maxResults"] == 20

    @pytest.mark.asyncio
    async def test_not_connected(self, user_db):
        user_db.add_user(1, "Alice")
        with pytest.raises(SourceError):
            await GmailSource(user_db).fetch_recent(1, SINCE, 20)

    @pytest.mark.asyncio
    async def test_listing_failure(self, user_db):
        user_db.add_user(1, "Alice")
        user_db.set_gmail_token(1, "{}")

        def factory(token):
            raise ValueError("bad credentials")

        with pytest.raises(SourceError):
            await GmailSource(user_db, service_factory=factory).fetch_recent(1, SINCE, 20)

    def test_account_ids(self, user_db):
        user_db.add_user(1, "Alice")
        user_db.add_user(2, "Bob")
        user_db.set_gmail_token(2, "{}")
        source = GmailSource(user_db)
        assert source.source == MessageSourceKind.EMAIL
        assert source.account_ids() == [2]


# ---------------------------------------------------------------------------
# X
# ---------------------------------------------------------------------------


MENTIONS = {
    "data": [
        {"id": "100", "text": "@me urgent question", "author_id": "7", "created_at": "2025-02-14T10:00:00Z",
         "public_metrics": {"like_count": 3, "reply_count": 1, "retweet_count": 0}},
    ],
    "includes": {"users": [{"id": "7", "username": "fan"}]},
}


class TestXMentionsSource:
    def test_to_inbound_message(self):
        msg = x_source.to_inbound_message(MENTIONS["data"][0], {"7": {"username": "fan"}})
        assert msg.sender == "@fan"
        assert msg.metadata["likes"] == 3
        assert msg.metadata["url"] == "https://twitter.com/fan/status/100"

    def test_no_token_no_accounts(self):
        assert XMentionsSource(bearer_token="", user_ids=[1]).account_ids() == []

    @pytest.mark.asyncio
    async def test_fetch_recent(self):
        requests = []

        def handler(request):
            requests.append(request)
            if request.url.path == "/2/users/me":
                return httpx.Response(200, json={"data": {"id": "42"}})
            return httpx.Response(200, json=MENTIONS)

        source = XMentionsSource(bearer_token="b", user_ids=[1], transport=httpx.MockTransport(handler))
        items = await source.fetch_recent(1, SINCE, 2)

        assert [i.external_id for i in items] == ["100"]
        mentions_req = requests[1]
        assert mentions_req.url.path == "/2/users/42/mentions"
        assert mentions_req.url.params["max_results"] == "5"
        assert mentions_req.url.params["start_time"] == "2025-02-14T08:00:00Z"
        assert mentions_req.headers["Authorization"] == "Bearer b"

        await source.fetch_recent(1, SINCE, 20)
        assert len(requests) == 3

    @pytest.mark.asyncio
    async def test_http_error_raises_source_error(self):
        source = XMentionsSource(
            bearer_token="b", user_ids=[1],
            transport=httpx.MockTransport(lambda r: httpx.Response(401, json={"title": "Unauthorized"})),
        )
        with pytest.raises(SourceError):
            await source.fetch_recent(1, SINCE, 20)
