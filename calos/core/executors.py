"""
Calos Assistant — Action Executors.

One executor per actionable intent. Each one resolves the target goal,
calls the goal tracker and reports back a user-facing ActionResult. None
of them raise: upstream failures come back as ``success=False`` with the
upstream message embedded.
"""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime

from calos.integrations.goal_tracker import (
    FuturePlan,
    Goal,
    GoalTrackerClient,
    match_goal,
)

logger = logging.getLogger(__name__)

GOAL_COLORS = (
    "#FF6B6B", "#4ECDC4", "#45B7D1", "#FFA07A", "#98D8C8",
    "#F7DC6F", "#BB8FCE", "#85C1E2", "#F8B195", "#C06C84",
)
MIN_DURATION_DAYS = 1
MAX_DURATION_DAYS = 3650

NO_GOALS_MESSAGE = "You don't have any active goals yet. Would you like to create one first?"
NO_GOALS_FOR_REMINDER_MESSAGE = (
    "You don't have any active goals. Create a goal first to add reminders to."
)
DURATION_MESSAGE = "Goal duration must be between 1 and 3650 days (10 years)."


# ---------------------------------------------------------------------------
# Result and parameter types
# ---------------------------------------------------------------------------


@dataclass
class GoalOption:
    id: int
    title: str
    progress: float = 0


@dataclass
class ActionResult:
    success: bool
    message: str
    action: str = ""
    data: dict | None = None
    needs_goal_selection: bool = False
    available_goals: list[GoalOption] = field(default_factory=list)


@dataclass
class CreateLogParams:
    goal_keyword: str | None = None
    activity: str | None = None
    good_thing: str | None = None
    note: str | None = None
    log_date: str | None = None


@dataclass
class CreateGoalParams:
    title: str | None = None
    duration_days: int | None = None
    description: str | None = None
    start_date: str | None = None
    color: str | None = None


@dataclass
class CreateReminderParams:
    title: str | None = None
    planned_date: str | None = None
    description: str | None = None
    goal_keyword: str | None = None


@dataclass
class UpdateGoalParams:
    goal_keyword: str | None = None
    title: str | None = None
    description: str | None = None
    duration_days: int | None = None
    is_active: bool | None = None


@dataclass
class StatusParams:
    goal_keyword: str | None = None


@dataclass
class SummaryParams:
    log_date: str | None = None


def _today() -> str:
    return date.today().isoformat()


def _options(goals: list[Goal]) -> list[GoalOption]:
    return [GoalOption(id=g.id, title=g.title, progress=g.progress) for g in goals]


def _one_item(value: str | None) -> list[str]:
    return [value] if value else []


def format_planned_date(planned_date: str) -> tuple[str, str]:
    """('Tuesday, December 5, 2025', '2:00 PM') in local time, or the raw string."""
    try:
        moment = datetime.fromisoformat(planned_date.replace("Z", "+00:00"))
    except ValueError:
        return planned_date, ""
    if moment.tzinfo is not None:
        moment = moment.astimezone()
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return (
        f"{moment:%A}, {moment:%B} {moment.day}, {moment.year}",
        f"{hour}:{moment.minute:02d} {suffix}",
    )


class _GoalExecutor:
    """Shared goal lookup for the executors below."""

    action = ""

    def __init__(self, client: GoalTrackerClient) -> None:
        self._client = client

    async def _active_goals(self, token: str) -> list[Goal]:
        return await self._client.get_active_goals(token)

    def _failure(self, verb: str, exc: Exception) -> ActionResult:
        logger.error("Failed to %s: %s", verb, exc)
        return ActionResult(success=False, message=f"Failed to {verb}: {exc}", action=self.action)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


class DailyLogCreator(_GoalExecutor):
    """Logs what the user did against the right goal."""

    action = "create_log"

    async def create_log(self, params: CreateLogParams, token: str) -> ActionResult:
        try:
            goal_or_result = await self._resolve_goal(params.goal_keyword, token)
            if isinstance(goal_or_result, ActionResult):
                return goal_or_result
            return await self._submit(goal_or_result.id, goal_or_result.title, params, token)
        except Exception as exc:
            return self._failure("create log", exc)

    async def create_log_for_goal(
        self, goal_id: int, params: CreateLogParams, token: str,
    ) -> ActionResult:
        """Finish a log once the user picked ``goal_id`` from a selection list."""
        try:
            result = await self._submit(goal_id, None, params, token)
            goal = next((g for g in await self._client.get_goals(token) if g.id == goal_id), None)
            if goal is not None:
                result.message = f'Logged successfully for "{goal.title}"!'
                result.data["goal_title"] = goal.title
            else:
                result.message = "Logged successfully!"
            return result
        except Exception as exc:
            return self._failure("create log", exc)

    async def _resolve_goal(self, keyword: str | None, token: str) -> Goal | ActionResult:
        if keyword:
            goal = await self._client.find_goal_by_keyword(token, keyword)
            if goal is not None:
                return goal
            active = await self._active_goals(token)
            if not active:
                return ActionResult(success=False, message=NO_GOALS_MESSAGE, action=self.action)
            return ActionResult(
                success=False,
                message=f'I couldn\'t find a goal matching "{keyword}". Which goal did you mean?',
                action=self.action,
                needs_goal_selection=True,
                available_goals=_options(active),
            )

        active = await self._active_goals(token)
        if not active:
            return ActionResult(success=False, message=NO_GOALS_MESSAGE, action=self.action)
        if len(active) == 1:
            return active[0]
        return ActionResult(
            success=False,
            message="Which goal should I log this for?",
            action=self.action,
            needs_goal_selection=True,
            available_goals=_options(active),
        )

    async def _submit(
        self, goal_id: int, goal_title: str | None, params: CreateLogParams, token: str,
    ) -> ActionResult:
        log_date = params.log_date or _today()
        activities = _one_item(params.activity)
        log = await self._client.create_daily_log(
            token,
            goal_id=goal_id,
            log_date=log_date,
            client_id=str(uuid.uuid4()),
            activities=activities,
            good_things=_one_item(params.good_thing),
            notes=params.note,
        )
        logger.info(
            "Daily log created: goal=%s date=%s activities=%d", goal_id, log_date, len(activities),
        )
        return ActionResult(
            success=True,
            message=f'Logged successfully for "{goal_title}"!' if goal_title else "Logged successfully!",
            action=self.action,
            data={"log": log.model_dump(by_alias=True), "goal_title": goal_title},
        )


class GoalCreator(_GoalExecutor):
    """Starts a new goal, validating duration before touching the network."""

    action = "create_goal"

    def __init__(self, client: GoalTrackerClient, rng: random.Random | None = None) -> None:
        super().__init__(client)
        self._rng = rng or random.Random()

    async def create_goal(self, params: CreateGoalParams, token: str) -> ActionResult:
        if not params.title or not params.title.strip():
            return ActionResult(
                success=False, message="What should the new goal be called?", action=self.action,
            )
        if params.duration_days is None or not (
            MIN_DURATION_DAYS <= params.duration_days <= MAX_DURATION_DAYS
        ):
            return ActionResult(success=False, message=DURATION_MESSAGE, action=self.action)

        color = params.color or self._rng.choice(GOAL_COLORS)
        try:
            goal = await self._client.create_goal(
                token,
                title=params.title.strip(),
                start_date=params.start_date or _today(),
                duration_days=params.duration_days,
                description=params.description,
                color=color,
                is_active=True,
            )
        except Exception as exc:
            return self._failure("create goal", exc)

        return ActionResult(
            success=True,
            message=f'Created "{goal.title}" goal for {goal.duration_days or params.duration_days} days!',
            action=self.action,
            data={"goal": goal.model_dump(by_alias=True), "color": goal.color or color},
        )


class ReminderCreator(_GoalExecutor):
    """Adds a future plan to today's log of a goal.

    With no keyword match the first active goal is used: a reminder needs
    *a* goal, unlike a log which needs the *right* one.
    """

    action = "create_reminder"

    async def create_reminder(self, params: CreateReminderParams, token: str) -> ActionResult:
        if not params.title or not params.planned_date:
            return ActionResult(
                success=False,
                message="What should I remind you about, and when?",
                action=self.action,
            )
        try:
            goal = None
            if params.goal_keyword:
                goal = await self._client.find_goal_by_keyword(token, params.goal_keyword)
            if goal is None:
                active = await self._active_goals(token)
                if not active:
                    return ActionResult(
                        success=False, message=NO_GOALS_FOR_REMINDER_MESSAGE, action=self.action,
                    )
                goal = active[0]

            log = await self._client.create_daily_log(
                token,
                goal_id=goal.id,
                log_date=_today(),
                client_id=str(uuid.uuid4()),
                future_plans=[FuturePlan(
                    title=params.title,
                    description=params.description,
                    planned_date=params.planned_date,
                )],
            )
        except Exception as exc:
            return self._failure("create reminder", exc)

        logger.info("Reminder created: goal=%s title='%s' at %s", goal.id, params.title, params.planned_date)
        day, time = format_planned_date(params.planned_date)
        when = f"{day} at {time}" if time else day
        return ActionResult(
            success=True,
            message=f'Reminder set for "{params.title}" on {when}!',
            action=self.action,
            data={"reminder": log.model_dump(by_alias=True), "goal_title": goal.title},
        )


class GoalUpdater(_GoalExecutor):
    """Renames, extends, pauses or resumes an existing goal."""

    action = "update_goal"

    async def update_goal(self, params: UpdateGoalParams, token: str) -> ActionResult:
        if params.duration_days is not None and not (
            MIN_DURATION_DAYS <= params.duration_days <= MAX_DURATION_DAYS
        ):
            return ActionResult(success=False, message=DURATION_MESSAGE, action=self.action)
        try:
            goals = await self._client.get_goals(token)
            goal = match_goal(params.goal_keyword, goals)
            if goal is None:
                if not goals:
                    return ActionResult(success=False, message=NO_GOALS_MESSAGE, action=self.action)
                return ActionResult(
                    success=False,
                    message="Which goal do you want to change?",
                    action=self.action,
                    needs_goal_selection=True,
                    available_goals=_options(goals),
                )

            changes = {
                "title": params.title,
                "description": params.description,
                "duration_days": params.duration_days,
            }
            has_field_changes = any(v is not None for v in changes.values())

            if not has_field_changes:
                if params.is_active is None:
                    return ActionResult(
                        success=False,
                        message=f'What would you like to change about "{goal.title}"?',
                        action=self.action,
                    )
                if params.is_active == goal.is_active:
                    state = "active" if goal.is_active else "paused"
                    return ActionResult(
                        success=True, message=f'"{goal.title}" is already {state}.', action=self.action,
                    )
                updated = await self._client.toggle_goal(token, goal.id)
                state = "resumed" if updated.is_active else "paused"
                return ActionResult(
                    success=True,
                    message=f'"{updated.title}" {state}.',
                    action=self.action,
                    data={"goal": updated.model_dump(by_alias=True)},
                )

            updated = await self._client.update_goal(
                token, goal.id, **changes, is_active=params.is_active,
            )
        except Exception as exc:
            return self._failure("update goal", exc)

        return ActionResult(
            success=True,
            message=f'Updated "{updated.title}"!',
            action=self.action,
            data={"goal": updated.model_dump(by_alias=True)},
        )


def _status_line(goal: Goal) -> str:
    return (
        f"• {goal.title}: {goal.progress:.0f}% complete, "
        f"{goal.days_remaining} days left ({goal.logged_days}/{goal.duration_days} days logged)"
    )


class StatusReporter(_GoalExecutor):
    """Progress for one goal, or for every active goal."""

    action = "get_status"

    async def get_status(self, params: StatusParams, token: str) -> ActionResult:
        try:
            goals = await self._client.get_goals(token)
        except Exception as exc:
            return self._failure("get status", exc)

        if params.goal_keyword:
            goal = match_goal(params.goal_keyword, goals)
            if goal is not None:
                return ActionResult(
                    success=True,
                    message=_status_line(goal),
                    action=self.action,
                    data={"goals": [goal.model_dump(by_alias=True)]},
                )

        active = [g for g in goals if g.is_active]
        if not active:
            return ActionResult(success=False, message=NO_GOALS_MESSAGE, action=self.action)
        lines = ["Here's where your goals stand:"] + [_status_line(g) for g in active]
        return ActionResult(
            success=True,
            message="\n".join(lines),
            action=self.action,
            data={"goals": [g.model_dump(by_alias=True) for g in active]},
        )


class SummaryReporter(_GoalExecutor):
    """Everything logged on a date across active goals."""

    action = "get_summary"

    async def get_summary(self, params: SummaryParams, token: str) -> ActionResult:
        log_date = params.log_date or _today()
        try:
            active = await self._active_goals(token)
            entries = []
            for goal in active:
                logs = await self._client.get_goal_logs(token, goal.id)
                for log in logs:
                    if log.log_date[:10] == log_date:
                        entries.append((goal, log))
        except Exception as exc:
            return self._failure("get summary", exc)

        if not entries:
            return ActionResult(
                success=True,
                message=f"Nothing logged for {log_date} yet.",
                action=self.action,
                data={"date": log_date, "entries": []},
            )

        lines = [f"Summary for {log_date}:"]
        for goal, log in entries:
            lines.append(f"• {goal.title}")
            lines.extend(f"  - {a}" for a in log.activities)
            lines.extend(f"  + {g}" for g in log.good_things)
        return ActionResult(
            success=True,
            message="\n".join(lines),
            action=self.action,
            data={
                "date": log_date,
                "entries": [
                    {"goal_title": goal.title, "log": log.model_dump(by_alias=True)}
                    for goal, log in entries
                ],
            },
        )
