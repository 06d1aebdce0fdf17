"""
Calos Assistant — Telegram Bot.

Telegram is the user-facing surface: free-text chat (with automatic goal
tracker actions), inbox triage with score corrections, monitoring
preferences and the daily briefing all flow through this bot.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from datetime import time as dt_time
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ChatAction, MessageLimit
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from calos.config import settings
from calos.core.executors import CreateLogParams, GoalOption
from calos.core.feedback import FeedbackPermissionError, MessageNotFoundError
from calos.data.models import ImportanceCategory, MonitoringPreferences

if TYPE_CHECKING:
    from calos.core.monitor import MonitoringScheduler
    from calos.data.models import MonitoredMessage
    from calos.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

CATEGORY_ICONS = {
    ImportanceCategory.HIGH: "🔴",
    ImportanceCategory.MEDIUM: "🟡",
    ImportanceCategory.LOW: "⚪",
}


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers: the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _truncate(text: str) -> str:
    if len(text) <= MessageLimit.MAX_TEXT_LENGTH:
        return text
    return text[: MessageLimit.MAX_TEXT_LENGTH - 1] + "…"


def _session_id(context: ContextTypes.DEFAULT_TYPE) -> str:
    session_id = context.user_data.get("session_id")
    if not session_id:
        session_id = context.bot_data["conversations"].create_session()
        context.user_data["session_id"] = session_id
    return session_id


def _ensure_user(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user_db = context.bot_data["user_db"]
    tg_user = update.effective_user
    user = user_db.get_user(tg_user.id)
    if user is None:
        user = user_db.add_user(tg_user.id, tg_user.first_name or str(tg_user.id))
    return user


def _log_params_from_entities(entities: dict | None) -> CreateLogParams:
    entities = entities or {}
    return CreateLogParams(
        goal_keyword=entities.get("goalKeyword"),
        activity=entities.get("activity"),
        good_thing=entities.get("goodThing"),
        log_date=entities.get("logDate"),
    )


def _goal_keyboard(goals: list[GoalOption]) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(f"{g.title} ({g.progress:.0f}%)", callback_data=f"logsel:{g.id}")]
        for g in goals
    ]
    rows.append([InlineKeyboardButton("Cancel", callback_data="logsel:cancel")])
    return InlineKeyboardMarkup(rows)


def _parse_feedback_args(args: list[str]) -> tuple[int, int, str | None] | None:
    """'/feedback <id> <score> [note...]' -> (id, score, note)."""
    if len(args) < 2:
        return None
    try:
        message_id, score = int(args[0]), int(args[1])
    except ValueError:
        return None
    if not 1 <= score <= 10:
        return None
    note = " ".join(args[2:]).strip() or None
    return message_id, score, note


def _format_message_line(msg: MonitoredMessage) -> str:
    icon = CATEGORY_ICONS.get(msg.category, "")
    headline = msg.subject or msg.content[:80].replace("\n", " ")
    return f"{icon} #{msg.id} [{msg.importance_score}/10] {msg.sender}: {headline}"


def _format_prefs(prefs) -> str:
    return (
        "⚙️ Monitoring preferences:\n"
        f"Active hours: {prefs.wake_time or settings.DEFAULT_WAKE_TIME}"
        f"–{prefs.sleep_time or settings.DEFAULT_SLEEP_TIME}\n"
        f"Important contacts: {', '.join(prefs.important_contacts) or '(none)'}\n"
        f"Ignore keywords: {', '.join(prefs.ignore_keywords) or '(none)'}\n"
        f"Last email sync: {prefs.email_last_sync or 'never'}\n"
        f"Last X sync: {prefs.social_last_sync or 'never'}\n\n"
        "Change with /prefs wake 07:30, /prefs sleep 22:00,\n"
        "/prefs contacts a@b.com,boss, /prefs ignore newsletter,sale"
    )


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start: register the user and say hello."""
    user = _ensure_user(update, context)
    await update.message.reply_text(
        f"Hi {user.display_name}, I'm Calos, your personal assistant!\n\n"
        "• Just talk to me: \"I practiced guitar for 30 minutes today\" logs it for you\n"
        "• Connect your goal tracker with /token <your token>\n"
        "• Connect Gmail with /connectgmail and I'll triage your inbox\n\n"
        "Type /help for the full command list."
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help: list available commands."""
    await update.message.reply_text(
        "Available commands:\n"
        "/token <token> — Connect your goal tracker account\n"
        "/newsession — Start a fresh conversation\n"
        "/history [n] — Show the last messages of this conversation\n"
        "/inbox [high|medium|low] — Unread monitored messages\n"
        "/feedback <id> <1-10> [note] — Correct an importance score\n"
        "/read <id> — Mark a monitored message as read\n"
        "/prefs — View or change monitoring preferences\n"
        "/briefing — Get your briefing now\n"
        "/connectgmail — Connect Gmail for monitoring\n"
        "/help — Show this message"
    )


@authorized_only
async def cmd_token(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /token <token>: store the goal tracker bearer token."""
    _ensure_user(update, context)
    if not context.args:
        await update.message.reply_text("Usage: /token <your goal tracker token>")
        return

    context.bot_data["user_db"].set_tracker_token(update.effective_user.id, context.args[0])
    try:
        await update.message.delete()
    except Exception as exc:
        logger.debug("Could not delete token message: %s", exc)
    await update.effective_chat.send_message(
        "✅ Goal tracker connected. I deleted your message to keep the token private."
    )


@authorized_only
async def cmd_newsession(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /newsession: start a new conversation session."""
    context.user_data["session_id"] = context.bot_data["conversations"].create_session()
    context.user_data.pop("pending_log", None)
    await update.message.reply_text("🆕 New conversation started.")


@authorized_only
async def cmd_history(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /history [n]: show recent turns of the current session."""
    limit = 10
    if context.args:
        try:
            limit = max(1, min(50, int(context.args[0])))
        except ValueError:
            await update.message.reply_text("Usage: /history [number of messages]")
            return

    history = context.bot_data["conversations"].get_session_history(_session_id(context), limit=limit)
    if not history:
        await update.message.reply_text("No messages in this conversation yet.")
        return

    lines = [f"{'You' if m.role == 'user' else 'Calos'}: {m.content}" for m in history]
    await update.message.reply_text(_truncate("\n\n".join(lines)))


@authorized_only
async def cmd_prefs(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /prefs [wake|sleep|contacts|ignore <value>]."""
    prefs_db = context.bot_data["preferences"]
    user_id = update.effective_user.id

    if context.args:
        key, value = context.args[0].lower(), " ".join(context.args[1:]).strip()
        field_map = {
            "wake": "wake_time",
            "sleep": "sleep_time",
            "contacts": "important_contacts",
            "ignore": "ignore_keywords",
        }
        if key not in field_map or not value:
            await update.message.reply_text(
                "Usage: /prefs wake HH:MM | sleep HH:MM | contacts a,b | ignore x,y"
            )
            return
        field = field_map[key]
        if field in ("important_contacts", "ignore_keywords"):
            value = [v.strip() for v in value.split(",") if v.strip()]
        try:
            prefs = prefs_db.update_preferences(user_id, **{field: value})
        except ValueError as exc:
            await update.message.reply_text(f"⚠️ {exc}")
            return
        await update.message.reply_text("✅ Saved.\n\n" + _format_prefs(prefs))
        return

    prefs = prefs_db.get_preferences(user_id) or MonitoringPreferences(user_id=user_id)
    await update.message.reply_text(_format_prefs(prefs))


@authorized_only
async def cmd_inbox(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /inbox [category]: list unread classified messages."""
    category = None
    if context.args:
        try:
            category = ImportanceCategory(context.args[0].lower())
        except ValueError:
            await update.message.reply_text("Usage: /inbox [high|medium|low]")
            return

    messages = context.bot_data["messages"].list_messages(
        update.effective_user.id, category=category, unread_only=True, limit=20,
    )
    if not messages:
        await update.message.reply_text("📭 Nothing unread. Inbox zero!")
        return

    lines = ["📬 Unread messages:"] + [_format_message_line(m) for m in messages]
    lines.append("\nCorrect a score: /feedback <id> <1-10> [note]")
    await update.message.reply_text(_truncate("\n".join(lines)))


@authorized_only
async def cmd_feedback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /feedback <id> <score> [note]: correct a classification."""
    parsed = _parse_feedback_args(context.args or [])
    if parsed is None:
        await update.message.reply_text("Usage: /feedback <message id> <score 1-10> [note]")
        return

    message_id, score, note = parsed
    try:
        context.bot_data["feedback"].record_feedback(
            message_id, update.effective_user.id, corrected_score=score, feedback_text=note,
        )
    except (MessageNotFoundError, FeedbackPermissionError):
        await update.message.reply_text(f"Message #{message_id} not found.")
        return

    await update.message.reply_text(
        f"👍 Thanks! Message #{message_id} is now {score}/10. "
        "I'll keep that in mind for this sender."
    )


@authorized_only
async def cmd_read(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /read <id>: mark a monitored message as read."""
    try:
        message_id = int(context.args[0])
    except (IndexError, TypeError, ValueError):
        await update.message.reply_text("Usage: /read <message id>")
        return

    if context.bot_data["messages"].mark_read(message_id, update.effective_user.id):
        await update.message.reply_text(f"✅ Message #{message_id} marked as read.")
    else:
        await update.message.reply_text(f"Message #{message_id} not found.")


@authorized_only
async def cmd_briefing(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /briefing: build the briefing on demand."""
    from calos.core.briefing import build_briefing

    user = _ensure_user(update, context)
    text = await build_briefing(
        user.telegram_user_id,
        user.display_name,
        context.bot_data["messages"],
        tracker=context.bot_data["tracker"],
        token=user.tracker_token,
    )
    await update.message.reply_text(_truncate(text))


@authorized_only
async def cmd_connectgmail(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /connectgmail [code]: two-step manual OAuth flow."""
    from calos.integrations.google_auth import exchange_google_auth_code, get_google_auth_url

    _ensure_user(update, context)

    if context.args:
        flow = context.user_data.get("gmail_flow")
        if flow is None:
            await update.message.reply_text("Run /connectgmail first to get a sign-in link.")
            return
        try:
            token_json = exchange_google_auth_code(flow, context.args[0])
        except Exception as exc:
            logger.error("Gmail code exchange failed: %s", exc)
            await update.message.reply_text("That code didn't work. Run /connectgmail to try again.")
            return
        context.bot_data["user_db"].set_gmail_token(update.effective_user.id, token_json)
        context.user_data.pop("gmail_flow", None)
        await update.message.reply_text("✅ Gmail connected. I'll start watching your inbox.")
        return

    try:
        auth_url, flow = get_google_auth_url()
    except FileNotFoundError as exc:
        logger.error("Gmail OAuth unavailable: %s", exc)
        await update.message.reply_text("Gmail isn't configured on this server yet.")
        return
    context.user_data["gmail_flow"] = flow
    await update.message.reply_text(
        "1. Open this link and allow read access to Gmail:\n"
        f"{auth_url}\n\n"
        "2. Send me the code with /connectgmail <code>"
    )


# ---------------------------------------------------------------------------
# Chat + goal selection
# ---------------------------------------------------------------------------


@authorized_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle plain text: chat, with goal tracker actions when connected."""
    user = _ensure_user(update, context)
    chat_service = context.bot_data["chat"]

    try:
        await update.effective_chat.send_action(ChatAction.TYPING)
    except Exception as exc:
        logger.debug("send_action failed: %s", exc)

    try:
        reply = await chat_service.chat(
            user.telegram_user_id,
            update.message.text,
            session_id=_session_id(context),
            token=user.tracker_token,
        )
    except Exception as exc:
        logger.error("Chat turn failed for user %d: %s", user.telegram_user_id, exc)
        await update.message.reply_text("Sorry, something went wrong. Please try again.")
        return

    action = reply.action_result
    if action is not None and action.needs_goal_selection and action.action == "create_log":
        context.user_data["pending_log"] = _log_params_from_entities(reply.entities)
        await update.message.reply_text(
            _truncate(reply.response), reply_markup=_goal_keyboard(action.available_goals),
        )
        return

    await update.message.reply_text(_truncate(reply.response))


async def _handle_goal_selection(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the inline button tap that picks a goal for a pending log."""
    query = update.callback_query
    user = query.from_user
    if user is None or user.id not in settings.ALLOWED_USER_IDS:
        return
    await query.answer()

    choice = query.data.split(":", 1)[1]
    pending: CreateLogParams | None = context.user_data.pop("pending_log", None)
    if choice == "cancel" or pending is None:
        await query.edit_message_text("Okay, nothing logged.")
        return

    db_user = context.bot_data["user_db"].get_user(user.id)
    if db_user is None or not db_user.tracker_token:
        await query.edit_message_text("Connect your goal tracker first with /token <token>.")
        return

    result = await context.bot_data["dispatcher"].complete_log_selection(
        int(choice), pending, db_user.tracker_token,
    )
    prefix = "✅ " if result.success else "⚠️ "
    await query.edit_message_text(prefix + result.message)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(notifier: NotificationPort | None = None) -> Application:
    """Build and configure the Telegram Application with all handlers and jobs."""
    from calos.core.action_service import ActionDispatcher, DispatchPolicy
    from calos.core.chat_service import ChatService
    from calos.core.classifier import MessageClassifier
    from calos.core.feedback import FeedbackLoop
    from calos.core.intent import IntentAnalyzer
    from calos.core.llm import GeminiGateway
    from calos.core.monitor import MonitoringScheduler
    from calos.data.db import ConversationDB, MonitoredMessageDB, PreferencesDB, UserDB
    from calos.integrations.gmail_source import GmailSource
    from calos.integrations.goal_tracker import GoalTrackerClient
    from calos.integrations.x_source import XMentionsSource

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if notifier is None:
        from calos.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    gateway = GeminiGateway()
    tracker = GoalTrackerClient()
    user_db = UserDB()
    conversations = ConversationDB()
    messages = MonitoredMessageDB()
    preferences = PreferencesDB()
    feedback = FeedbackLoop(messages)
    dispatcher = ActionDispatcher(tracker, policy=DispatchPolicy.from_settings())
    scheduler = MonitoringScheduler(
        sources=[GmailSource(user_db), XMentionsSource()],
        classifier=MessageClassifier(gateway, feedback),
        store=messages,
        preferences=preferences,
        notifier=notifier,
    )

    app.bot_data.update({
        "notifier": notifier,
        "tracker": tracker,
        "user_db": user_db,
        "conversations": conversations,
        "messages": messages,
        "preferences": preferences,
        "feedback": feedback,
        "dispatcher": dispatcher,
        "scheduler": scheduler,
        "chat": ChatService(gateway, conversations, IntentAnalyzer(gateway), dispatcher),
    })

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("token", cmd_token))
    app.add_handler(CommandHandler("newsession", cmd_newsession))
    app.add_handler(CommandHandler("history", cmd_history))
    app.add_handler(CommandHandler("prefs", cmd_prefs))
    app.add_handler(CommandHandler("inbox", cmd_inbox))
    app.add_handler(CommandHandler("feedback", cmd_feedback))
    app.add_handler(CommandHandler("read", cmd_read))
    app.add_handler(CommandHandler("briefing", cmd_briefing))
    app.add_handler(CommandHandler("connectgmail", cmd_connectgmail))
    app.add_handler(CallbackQueryHandler(_handle_goal_selection, pattern=r"^logsel:(\d+|cancel)$"))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    _setup_monitoring_jobs(app, scheduler)
    _setup_morning_briefing(app, notifier)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_monitoring_jobs(app: Application, scheduler: MonitoringScheduler) -> None:
    """Drive each source's RecurringJob from the PTB job queue."""
    for kind, job in scheduler.jobs.items():

        async def _monitor_callback(context: ContextTypes.DEFAULT_TYPE, job=job) -> None:
            await job.run_now()

        app.job_queue.run_repeating(
            _monitor_callback,
            interval=job.interval,
            first=30,
            name=job.name,
        )
        logger.info("Monitoring job %s scheduled every %s", job.name, job.interval)


def _setup_morning_briefing(app: Application, notifier: NotificationPort) -> None:
    """Register the daily briefing job at MORNING_BRIEFING_HOUR local time."""
    from calos.core.briefing import send_morning_briefing

    tz = ZoneInfo(settings.TIMEZONE)
    briefing_time = dt_time(hour=settings.MORNING_BRIEFING_HOUR, minute=0, tzinfo=tz)

    async def _morning_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        data = context.application.bot_data
        await send_morning_briefing(notifier, data["user_db"], data["messages"], data["tracker"])

    app.job_queue.run_daily(
        _morning_job_callback,
        time=briefing_time,
        name="morning_briefing",
    )

    logger.info(
        "Morning briefing scheduled at %02d:00 %s",
        settings.MORNING_BRIEFING_HOUR,
        settings.TIMEZONE,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Calos Assistant bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
