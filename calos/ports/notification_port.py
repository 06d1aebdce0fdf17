"""Notification port — abstract interface for pushing messages to users.

The briefing and monitoring jobs depend on this protocol, never on a
specific messaging provider.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Push channel used for briefings and high-importance alerts."""

    async def send_message(self, user_id: int, text: str) -> None: ...
