"""Source port — abstract interface for inbound message fetchers.

The monitoring scheduler depends on this protocol, never on Gmail or X
directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from calos.data.models import InboundMessage, MessageSourceKind


class SourceError(Exception):
    """Raised when a source cannot be read for a user."""


class MessageSource(Protocol):
    """One inbound channel (email, social) for any number of users."""

    source: MessageSourceKind

    def account_ids(self) -> list[int]:
        """Telegram user ids that have this source connected."""
        ...

    async def fetch_recent(
        self, user_id: int, since: datetime, max_results: int
    ) -> list[InboundMessage]: ...
