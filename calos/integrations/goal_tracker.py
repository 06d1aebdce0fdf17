"""Goal tracker REST integration — goals, daily logs and reminders.

Thin async client over the external goal tracker API. Goals and logs
live there, never in our SQLite database; every call is authenticated
with the caller's bearer token.

Also holds the two-phase fuzzy goal matcher: substring containment in
source order first, then the best word-level Jaccard similarity above 0.5.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.5


class GoalTrackerError(Exception):
    """The goal tracker rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Goal(_CamelModel):
    id: int
    title: str
    description: str | None = None
    start_date: str | None = None
    duration_days: int = 0
    end_date: str | None = None
    color: str | None = None
    is_active: bool = True
    logged_days: int = 0
    progress: float = 0
    days_remaining: int = 0


class FuturePlan(_CamelModel):
    title: str
    description: str | None = None
    planned_date: str


class DailyLog(_CamelModel):
    id: int | None = None
    goal_id: int
    log_date: str
    notes: str | None = None
    activities: list[str] = Field(default_factory=list)
    good_things: list[str] = Field(default_factory=list)
    future_plans: list[FuturePlan] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Fuzzy matching
# ---------------------------------------------------------------------------

def jaccard_similarity(a: str, b: str) -> float:
    """|shared words| / |all distinct words| over whitespace tokens."""
    words_a = set(a.split())
    words_b = set(b.split())
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def match_goal(keyword: str | None, goals: list[Goal]) -> Goal | None:
    """Resolve a free-text goal reference against ``goals``.

    Substring containment in either direction wins first (list order).
    Otherwise the goal with the highest Jaccard similarity is returned
    when it exceeds SIMILARITY_THRESHOLD.
    """
    needle = (keyword or "").lower().strip()
    if not needle or not goals:
        return None

    for goal in goals:
        title = goal.title.lower().strip()
        if needle in title or (title and title in needle):
            logger.info("Goal found by substring match: '%s' -> '%s'", keyword, goal.title)
            return goal

    best = max(goals, key=lambda g: jaccard_similarity(needle, g.title.lower().strip()))
    score = jaccard_similarity(needle, best.title.lower().strip())
    if score > SIMILARITY_THRESHOLD:
        logger.info("Goal found by fuzzy match: '%s' -> '%s' (%.2f)", keyword, best.title, score)
        return best

    logger.info("No matching goal found for '%s'", keyword)
    return None


# ---------------------------------------------------------------------------
# REST client
# ---------------------------------------------------------------------------

class GoalTrackerClient:
    """Async client for the goal tracker API."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if base_url is None or timeout is None:
            from calos.config import settings
            base_url = base_url or settings.GOAL_TRACKER_API_URL
            timeout = timeout if timeout is not None else settings.GOAL_TRACKER_TIMEOUT_SECONDS
        self._base_url = base_url.rstrip("/") + "/"
        self._timeout = timeout
        self._transport = transport

    async def _request(
        self, method: str, path: str, token: str, payload: dict | None = None,
    ) -> Any:
        logger.info("Goal tracker request: %s %s", method, path)
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport,
            ) as client:
                resp = await client.request(
                    method,
                    path.lstrip("/"),
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as exc:
            logger.error("Goal tracker unreachable: %s %s: %s", method, path, exc)
            raise GoalTrackerError(str(exc) or type(exc).__name__) from exc

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.is_error:
            message = body.get("message") if isinstance(body, dict) else None
            message = message or f"HTTP {resp.status_code}"
            logger.error("Goal tracker error: status=%d message=%s", resp.status_code, message)
            raise GoalTrackerError(message, status_code=resp.status_code)

        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def get_goals(self, token: str) -> list[Goal]:
        data = await self._request("GET", "/goals", token)
        return [Goal.model_validate(item) for item in data or []]

    async def get_active_goals(self, token: str) -> list[Goal]:
        return [g for g in await self.get_goals(token) if g.is_active]

    async def create_goal(
        self,
        token: str,
        title: str,
        start_date: str,
        duration_days: int,
        description: str | None = None,
        color: str | None = None,
        is_active: bool = True,
    ) -> Goal:
        payload = {
            "title": title,
            "startDate": start_date,
            "durationDays": duration_days,
            "isActive": is_active,
        }
        if description:
            payload["description"] = description
        if color:
            payload["color"] = color
        data = await self._request("POST", "/goals", token, payload)
        goal = Goal.model_validate(data)
        logger.info("Goal created: id=%s title='%s'", goal.id, goal.title)
        return goal

    async def update_goal(self, token: str, goal_id: int, **changes) -> Goal:
        """PUT partial goal fields. Keys are snake_case and sent as camelCase."""
        payload = {to_camel(k): v for k, v in changes.items() if v is not None}
        data = await self._request("PUT", f"/goals/{goal_id}", token, payload)
        logger.info("Goal updated: id=%s fields=%s", goal_id, sorted(payload))
        return Goal.model_validate(data)

    async def toggle_goal(self, token: str, goal_id: int) -> Goal:
        data = await self._request("PATCH", f"/goals/{goal_id}/toggle", token)
        logger.info("Goal toggled: id=%s", goal_id)
        return Goal.model_validate(data)

    async def create_daily_log(
        self,
        token: str,
        goal_id: int,
        log_date: str,
        client_id: str,
        activities: list[str] | None = None,
        good_things: list[str] | None = None,
        future_plans: list[FuturePlan] | None = None,
        notes: str | None = None,
    ) -> DailyLog:
        payload: dict[str, Any] = {
            "goalId": goal_id,
            "logDate": log_date,
            "clientId": client_id,
        }
        if activities:
            payload["activities"] = activities
        if good_things:
            payload["goodThings"] = good_things
        if future_plans:
            payload["futurePlans"] = [
                p.model_dump(by_alias=True, exclude_none=True) for p in future_plans
            ]
        if notes:
            payload["notes"] = notes
        data = await self._request("POST", "/daily-logs", token, payload)
        logger.info("Daily log created: goal=%s date=%s", goal_id, log_date)
        if not isinstance(data, dict):
            return DailyLog.model_validate(payload)
        return DailyLog.model_validate({**payload, **data})

    async def get_goal_logs(self, token: str, goal_id: int) -> list[DailyLog]:
        data = await self._request("GET", f"/daily-logs/goal/{goal_id}", token)
        return [DailyLog.model_validate(item) for item in data or []]

    async def find_goal_by_keyword(self, token: str, keyword: str) -> Goal | None:
        """Fetch all goals and fuzzy-match ``keyword`` against their titles."""
        return match_goal(keyword, await self.get_goals(token))
