"""
Calos Assistant — Action Dispatcher.

Confidence-gated router from an IntentResult to the matching executor.
Each branch maps the typed entity variant onto the executor's parameter
struct. Executor exceptions are converted to a failed ActionResult so an
action never aborts the chat turn that triggered it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from calos.core.executors import (
    ActionResult,
    CreateGoalParams,
    CreateLogParams,
    CreateReminderParams,
    DailyLogCreator,
    GoalCreator,
    GoalUpdater,
    ReminderCreator,
    StatusParams,
    StatusReporter,
    SummaryParams,
    SummaryReporter,
    UpdateGoalParams,
)
from calos.core.intent import (
    GoalEntities,
    Intent,
    IntentResult,
    LogEntities,
    ReminderEntities,
    StatusEntities,
    SummaryEntities,
    UpdateGoalEntities,
)
from calos.integrations.goal_tracker import GoalTrackerClient

logger = logging.getLogger(__name__)

CHAT_CONFIDENCE_FLOOR = 0.5


@dataclass(frozen=True)
class DispatchPolicy:
    """Confidence thresholds.

    Above ``dispatch_threshold`` an action runs. ``auto_execute_threshold``
    and ``confirmation_threshold`` are advisory knobs for callers that want
    to ask before acting in the soft zone.
    """

    dispatch_threshold: float = 0.6
    auto_execute_threshold: float = 0.9
    confirmation_threshold: float = 0.7

    @classmethod
    def from_settings(cls) -> DispatchPolicy:
        from calos.config import settings
        return cls(
            dispatch_threshold=settings.DISPATCH_CONFIDENCE_THRESHOLD,
            auto_execute_threshold=settings.AUTO_EXECUTE_THRESHOLD,
            confirmation_threshold=settings.INTENT_CONFIDENCE_THRESHOLD,
        )

    def should_dispatch(self, result: IntentResult) -> bool:
        return result.intent != Intent.CHAT and result.confidence > self.dispatch_threshold

    def should_auto_execute(self, result: IntentResult) -> bool:
        return result.confidence >= self.auto_execute_threshold

    def needs_confirmation(self, result: IntentResult) -> bool:
        return CHAT_CONFIDENCE_FLOOR <= result.confidence < self.confirmation_threshold

    def is_chat(self, result: IntentResult) -> bool:
        return result.intent == Intent.CHAT or result.confidence < CHAT_CONFIDENCE_FLOOR


class ActionDispatcher:
    """Routes analyzed intents to executors."""

    def __init__(
        self,
        client: GoalTrackerClient,
        policy: DispatchPolicy | None = None,
        log_creator: DailyLogCreator | None = None,
        goal_creator: GoalCreator | None = None,
        reminder_creator: ReminderCreator | None = None,
        goal_updater: GoalUpdater | None = None,
        status_reporter: StatusReporter | None = None,
        summary_reporter: SummaryReporter | None = None,
    ) -> None:
        self.policy = policy or DispatchPolicy()
        self.log_creator = log_creator or DailyLogCreator(client)
        self.goal_creator = goal_creator or GoalCreator(client)
        self.reminder_creator = reminder_creator or ReminderCreator(client)
        self.goal_updater = goal_updater or GoalUpdater(client)
        self.status_reporter = status_reporter or StatusReporter(client)
        self.summary_reporter = summary_reporter or SummaryReporter(client)

    async def dispatch(self, result: IntentResult, token: str) -> ActionResult | None:
        """Run the action for ``result``, or return None when it is just chat."""
        if not self.policy.should_dispatch(result):
            logger.debug(
                "Not dispatching intent %s (confidence %.2f)", result.intent.value, result.confidence,
            )
            return None

        try:
            action = await self._route(result, token)
        except Exception as exc:
            logger.error("Action execution failed for intent %s: %s", result.intent.value, exc)
            return ActionResult(
                success=False, message="Failed to execute action", action=result.intent.value,
            )

        if action is None:
            return None
        if action.success:
            logger.info("Action %s succeeded: %s", action.action, action.message)
        else:
            logger.info("Action %s did not complete: %s", action.action, action.message)
        return action

    async def _route(self, result: IntentResult, token: str) -> ActionResult | None:
        e = result.entities

        if result.intent == Intent.CREATE_LOG and isinstance(e, LogEntities):
            return await self.log_creator.create_log(
                CreateLogParams(
                    goal_keyword=e.goal_keyword,
                    activity=e.activity,
                    good_thing=e.good_thing,
                    log_date=e.log_date,
                ),
                token,
            )

        if result.intent == Intent.CREATE_GOAL and isinstance(e, GoalEntities):
            return await self.goal_creator.create_goal(
                CreateGoalParams(
                    title=e.title,
                    duration_days=e.duration_days,
                    description=e.description,
                    start_date=e.start_date,
                    color=e.color,
                ),
                token,
            )

        if result.intent == Intent.CREATE_REMINDER and isinstance(e, ReminderEntities):
            return await self.reminder_creator.create_reminder(
                CreateReminderParams(
                    title=e.title,
                    planned_date=e.planned_date,
                    description=e.description,
                    goal_keyword=e.goal_keyword,
                ),
                token,
            )

        if result.intent == Intent.UPDATE_GOAL and isinstance(e, UpdateGoalEntities):
            return await self.goal_updater.update_goal(
                UpdateGoalParams(
                    goal_keyword=e.goal_keyword,
                    title=e.title,
                    description=e.description,
                    duration_days=e.duration_days,
                    is_active=e.is_active,
                ),
                token,
            )

        if result.intent == Intent.GET_STATUS and isinstance(e, StatusEntities):
            return await self.status_reporter.get_status(
                StatusParams(goal_keyword=e.goal_keyword), token,
            )

        if result.intent == Intent.GET_SUMMARY and isinstance(e, SummaryEntities):
            return await self.summary_reporter.get_summary(
                SummaryParams(log_date=e.log_date), token,
            )

        logger.warning(
            "Entities %s do not fit intent %s", type(e).__name__, result.intent.value,
        )
        return None

    async def complete_log_selection(
        self, goal_id: int, params: CreateLogParams, token: str,
    ) -> ActionResult:
        """Second half of a 'needs goal selection' round-trip."""
        try:
            return await self.log_creator.create_log_for_goal(goal_id, params, token)
        except Exception as exc:
            logger.error("Log for selected goal %s failed: %s", goal_id, exc)
            return ActionResult(success=False, message="Failed to execute action", action="create_log")
