"""
Calos Assistant — Monitoring Scheduler.

Periodically pulls new messages from each inbound source, skips the ones
already stored, classifies the rest and persists them. One RecurringJob
per source; a job that is still running ignores further triggers, while
different sources may run side by side.

Per-user processing is sequential. A failing user or item is logged and
skipped; the (user, source, external id) UNIQUE constraint backs up the
dedup check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Awaitable, Callable, Generic, TypeVar
from zoneinfo import ZoneInfo

from calos.core.classifier import MessageClassifier
from calos.data.db import MonitoredMessageDB, PreferencesDB
from calos.data.models import ImportanceCategory, MessageSourceKind, MonitoredMessage
from calos.ports.notification_port import NotificationPort
from calos.ports.source_port import MessageSource

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOOKBACK = timedelta(hours=24)


# ---------------------------------------------------------------------------
# Recurring job abstraction
# ---------------------------------------------------------------------------


class RecurringJob(Generic[T]):
    """A callback on a fixed interval with an in-flight guard.

    ``run_now`` runs the callback unless a previous run is still going, in
    which case it returns None immediately. ``next_due`` tells a driver
    (the PTB job queue, or a test) when the next run should happen.
    """

    def __init__(
        self,
        name: str,
        interval: timedelta,
        callback: Callable[[], Awaitable[T]],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._running = False
        self.last_started: datetime | None = None
        self.last_finished: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def next_due(self, now: datetime | None = None) -> datetime:
        now = now or self._clock()
        if self.last_started is None:
            return now
        return self.last_started + self.interval

    def is_due(self, now: datetime | None = None) -> bool:
        now = now or self._clock()
        return not self._running and now >= self.next_due(now)

    async def run_now(self) -> T | None:
        if self._running:
            logger.info("Job %s is still running, skipping this trigger", self.name)
            return None

        self._running = True
        self.last_started = self._clock()
        try:
            return await self._callback()
        except Exception as exc:
            logger.error("Job %s failed: %s", self.name, exc)
            return None
        finally:
            self._running = False
            self.last_finished = self._clock()


# ---------------------------------------------------------------------------
# Active hours
# ---------------------------------------------------------------------------


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def is_within_window(now: time, wake: str, sleep: str) -> bool:
    """True when ``now`` lies in [wake, sleep]. Windows may wrap midnight."""
    start, end = _parse_hhmm(wake), _parse_hhmm(sleep)
    now = now.replace(second=0, microsecond=0)
    if start == end:
        return True
    if start < end:
        return start <= now <= end
    return now >= start or now <= end


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@dataclass
class CycleReport:
    source: MessageSourceKind
    users_checked: int = 0
    users_skipped: int = 0
    fetched: int = 0
    stored: int = 0
    duplicates: int = 0
    failures: int = 0
    stored_messages: list[MonitoredMessage] = field(default_factory=list)


class MonitoringScheduler:
    def __init__(
        self,
        sources: list[MessageSource],
        classifier: MessageClassifier,
        store: MonitoredMessageDB,
        preferences: PreferencesDB,
        notifier: NotificationPort | None = None,
        intervals: dict[MessageSourceKind, timedelta] | None = None,
        max_results: int | None = None,
        timezone: str | None = None,
        default_wake: str | None = None,
        default_sleep: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if None in (intervals, max_results, timezone, default_wake, default_sleep):
            from calos.config import settings
            intervals = intervals or {
                MessageSourceKind.EMAIL: timedelta(minutes=settings.GMAIL_CHECK_INTERVAL_MINUTES),
                MessageSourceKind.SOCIAL: timedelta(minutes=settings.X_CHECK_INTERVAL_MINUTES),
            }
            max_results = max_results or settings.MONITOR_MAX_RESULTS
            timezone = timezone or settings.TIMEZONE
            default_wake = default_wake or settings.DEFAULT_WAKE_TIME
            default_sleep = default_sleep or settings.DEFAULT_SLEEP_TIME

        self._sources = {s.source: s for s in sources}
        self._classifier = classifier
        self._store = store
        self._preferences = preferences
        self._notifier = notifier
        self._max_results = max_results
        self._tz = ZoneInfo(timezone)
        self._default_wake = default_wake
        self._default_sleep = default_sleep
        self._clock = clock or (lambda: datetime.now(self._tz))

        self.jobs: dict[MessageSourceKind, RecurringJob[CycleReport]] = {
            kind: RecurringJob(
                name=f"monitor-{kind.value}",
                interval=intervals.get(kind, timedelta(hours=1)),
                callback=self._cycle_callback(kind),
                clock=self._clock,
            )
            for kind in self._sources
        }

    def _cycle_callback(self, kind: MessageSourceKind) -> Callable[[], Awaitable[CycleReport]]:
        async def _run() -> CycleReport:
            return await self.run_cycle(kind)
        return _run

    async def trigger(self, kind: MessageSourceKind) -> CycleReport | None:
        """Run one guarded cycle for ``kind``; None if one is already running."""
        return await self.jobs[kind].run_now()

    def is_within_active_hours(self, user_id: int, now: datetime | None = None) -> bool:
        now = now or self._clock()
        prefs = self._preferences.get_preferences(user_id)
        # Unset bounds fall back to the configured window
        wake = (prefs.wake_time if prefs else None) or self._default_wake
        sleep = (prefs.sleep_time if prefs else None) or self._default_sleep
        local = now.astimezone(self._tz) if now.tzinfo else now
        return is_within_window(local.time(), wake, sleep)

    def _since(self, user_id: int, kind: MessageSourceKind, now: datetime) -> datetime:
        prefs = self._preferences.get_preferences(user_id)
        last_sync = prefs.last_sync_for(kind) if prefs else None
        if last_sync:
            try:
                since = datetime.fromisoformat(last_sync)
                return since if since.tzinfo else since.replace(tzinfo=self._tz)
            except ValueError:
                logger.warning("Unreadable last sync %r for user %d", last_sync, user_id)
        return now - DEFAULT_LOOKBACK

    async def run_cycle(self, kind: MessageSourceKind) -> CycleReport:
        """Fetch, dedup, classify and persist for every account of ``kind``."""
        source = self._sources[kind]
        report = CycleReport(source=kind)
        logger.info("Running %s monitoring cycle", kind.value)

        for user_id in source.account_ids():
            now = self._clock()
            if not self.is_within_active_hours(user_id, now):
                logger.debug("Outside active hours, skipping %s check for user %d", kind.value, user_id)
                report.users_skipped += 1
                continue

            report.users_checked += 1
            try:
                await self._process_user(source, user_id, now, report)
            except Exception as exc:
                report.failures += 1
                logger.error("Error checking %s for user %d: %s", kind.value, user_id, exc)

        logger.info(
            "%s cycle done: checked=%d skipped=%d fetched=%d stored=%d duplicates=%d failures=%d",
            kind.value, report.users_checked, report.users_skipped, report.fetched,
            report.stored, report.duplicates, report.failures,
        )
        return report

    async def _process_user(
        self, source: MessageSource, user_id: int, now: datetime, report: CycleReport,
    ) -> None:
        kind = source.source
        items = await source.fetch_recent(user_id, self._since(user_id, kind, now), self._max_results)
        report.fetched += len(items)

        for item in items:
            try:
                if self._store.is_message_stored(user_id, kind, item.external_id):
                    report.duplicates += 1
                    continue

                result = await self._classifier.classify(user_id, item, kind)
                stored = self._store.store_message(
                    user_id=user_id,
                    source=kind,
                    external_message_id=item.external_id,
                    sender=item.sender,
                    subject=item.subject,
                    content=item.content,
                    importance_score=result.score,
                    category=result.category,
                    metadata={
                        **item.metadata,
                        "date": item.created_at,
                        "reasoning": result.reasoning,
                    },
                )
                if stored is None:
                    report.duplicates += 1
                    continue

                report.stored += 1
                report.stored_messages.append(stored)
                logger.info(
                    "Stored classified %s: user=%d id=%s category=%s score=%d",
                    kind.value, user_id, item.external_id, result.category.value, result.score,
                )
                await self._alert(stored)
            except Exception as exc:
                report.failures += 1
                logger.error(
                    "Error processing %s item %s for user %d: %s",
                    kind.value, item.external_id, user_id, exc,
                )

        self._preferences.update_last_sync(user_id, kind, now.isoformat())

    async def _alert(self, message: MonitoredMessage) -> None:
        if self._notifier is None or message.category != ImportanceCategory.HIGH:
            return
        label = "email" if message.source == MessageSourceKind.EMAIL else "mention"
        headline = message.subject or message.content[:120]
        text = (
            f"🔴 Important {label} from {message.sender} ({message.importance_score}/10)\n"
            f"{headline}\n\n"
            f"Wrong score? /feedback {message.id} <1-10>"
        )
        try:
            await self._notifier.send_message(message.user_id, text)
        except Exception as exc:
            logger.error("Failed to send alert for message %d: %s", message.id, exc)
