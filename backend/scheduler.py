"""
Hourly digest scheduler.

A minute-level APScheduler job pops recipients whose next fire time has passed
from a min-heap. Fire times are recomputed whenever a recipient's preferences
change. Due recipients are processed by a bounded pool of workers reading a
per-tick queue, with a fixed pause between recipients on each worker.
"""

import heapq
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import SCHEDULER_THROTTLE_SECONDS, SCHEDULER_WORKERS
from database import HistoryStore, RecipientStore, utc_now
from logging_setup import short_id
from models import RecipientPreferences
from services.digest_pipeline import DigestOutcome, DigestPipeline

logger = logging.getLogger(__name__)

TICK_JOB_ID = "digest_tick"
# A slot older than this when popped is dropped, not delivered late
CATCHUP_WINDOW = timedelta(hours=1)


def hour_slot(moment: datetime) -> datetime:
    """Start of the UTC hour containing `moment`."""
    return moment.astimezone(pytz.utc).replace(minute=0, second=0, microsecond=0)


def next_fire_time(hour: int, now: datetime, served_since: datetime | None = None) -> datetime:
    """
    Next UTC slot at which a recipient scheduled for `hour` should fire.

    The current hour's slot is returned when it matches and no digest was
    created since it started (late start or restart within the hour).
    """
    current = hour_slot(now)
    if current.hour == hour and (served_since is None or served_since < current):
        return current
    candidate = current.replace(hour=hour)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class FireQueue:
    """Min-heap of (fire_at, recipient_id) with lazy removal of superseded entries."""

    def __init__(self):
        self._heap: list[tuple[datetime, str]] = []
        self._scheduled: dict[str, datetime] = {}

    def __len__(self) -> int:
        return len(self._scheduled)

    def __contains__(self, recipient_id: str) -> bool:
        return recipient_id in self._scheduled

    def schedule(self, recipient_id: str, fire_at: datetime) -> None:
        self._scheduled[recipient_id] = fire_at
        heapq.heappush(self._heap, (fire_at, recipient_id))
        if len(self._heap) > 2 * len(self._scheduled) + 64:
            self._compact()

    def cancel(self, recipient_id: str) -> None:
        self._scheduled.pop(recipient_id, None)

    def clear(self) -> None:
        self._heap.clear()
        self._scheduled.clear()

    def fire_time(self, recipient_id: str) -> datetime | None:
        return self._scheduled.get(recipient_id)

    def peek(self) -> datetime | None:
        return min(self._scheduled.values()) if self._scheduled else None

    def pop_due(self, now: datetime) -> list[tuple[str, datetime]]:
        """Remove and return every live entry with fire_at <= now, earliest first."""
        due = []
        while self._heap and self._heap[0][0] <= now:
            fire_at, recipient_id = heapq.heappop(self._heap)
            if self._scheduled.get(recipient_id) != fire_at:
                continue
            del self._scheduled[recipient_id]
            due.append((recipient_id, fire_at))
        return due

    def _compact(self) -> None:
        self._heap = [(fire_at, rid) for rid, fire_at in self._scheduled.items()]
        heapq.heapify(self._heap)


@dataclass
class TickReport:
    started_at: datetime
    due: int = 0
    outcomes: list[DigestOutcome] = field(default_factory=list)
    missed: list[str] = field(default_factory=list)
    persistence_failures: int = 0
    overlapped: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)

    @property
    def delivered(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.delivered)


class DigestScheduler:
    """
    Finds due recipients each tick and runs the digest pipeline for them.

    Args:
        recipients: Recipient store; the scheduler listens to its changes.
        history: History store, used to tell whether a slot was already served.
        pipeline: Per-recipient generate/store/notify pipeline.
        workers: Number of concurrent workers per tick.
        throttle_seconds: Pause on a worker between two recipients.
        clock: Returns the current aware UTC datetime.
        sleep: Sleep function, replaced in tests.
    """

    def __init__(
        self,
        recipients: RecipientStore,
        history: HistoryStore,
        pipeline: DigestPipeline,
        workers: int = SCHEDULER_WORKERS,
        throttle_seconds: float = SCHEDULER_THROTTLE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.recipients = recipients
        self.history = history
        self.pipeline = pipeline
        self.workers = max(1, workers)
        self.throttle_seconds = throttle_seconds
        self.clock = clock
        self.sleep = sleep
        self.fire_queue = FireQueue()
        self._queue_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._scheduler = BackgroundScheduler(timezone=pytz.utc)
        recipients.add_listener(self.reschedule)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        self.rebuild()
        self._scheduler.add_job(
            self.tick,
            CronTrigger(minute="*", timezone=pytz.utc),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "Digest scheduler started: checking every minute, %d recipient(s) scheduled",
            len(self.fire_queue),
        )

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Digest scheduler stopped")

    def rebuild(self, now: datetime | None = None) -> None:
        """Recompute fire times for every stored recipient."""
        now = now or self.clock()
        with self._queue_lock:
            self.fire_queue.clear()
        for recipient_id, _ in self.recipients.all():
            self.reschedule(recipient_id, now, catch_up=True)

    def reschedule(self, recipient_id: str, now: datetime | None = None, catch_up: bool = False) -> datetime | None:
        """
        Recompute one recipient's next fire time; drops it when undeliverable.

        Only `catch_up` (startup rebuild) may return the slot of the hour
        already under way; preference changes wait for the next boundary.
        """
        now = now or self.clock()
        prefs = self.recipients.get(recipient_id)
        hour = prefs.scheduled_hour if prefs else None
        if prefs is None or not prefs.deliverable or hour is None:
            with self._queue_lock:
                self.fire_queue.cancel(recipient_id)
            return None

        if catch_up:
            latest = self.history.latest(recipient_id)
            served_since = latest.created_at if latest else None
        else:
            served_since = now
        fire_at = next_fire_time(hour, now, served_since)
        with self._queue_lock:
            self.fire_queue.schedule(recipient_id, fire_at)
        return fire_at

    def collect_due(self, now: datetime) -> tuple[list[tuple[str, RecipientPreferences]], list[str]]:
        """Pop due entries and re-check them against current preferences."""
        with self._queue_lock:
            popped = self.fire_queue.pop_due(now)

        due = []
        missed = []
        for recipient_id, fire_at in popped:
            prefs = self.recipients.get(recipient_id)
            if now - fire_at >= CATCHUP_WINDOW:
                logger.warning("Skipping missed %s slot for %s", fire_at.isoformat(), short_id(recipient_id))
                missed.append(recipient_id)
            elif prefs is not None and prefs.is_due_at(fire_at.hour):
                due.append((recipient_id, prefs))

            if prefs is not None and prefs.deliverable and prefs.scheduled_hour is not None:
                with self._queue_lock:
                    self.fire_queue.schedule(
                        recipient_id, next_fire_time(prefs.scheduled_hour, now, served_since=now)
                    )
        return due, missed

    def tick(self, now: datetime | None = None) -> TickReport:
        """One scheduler cycle: Skip when nothing is due, otherwise Fire."""
        now = now or self.clock()
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous scheduler tick still running, skipping %s", now.isoformat())
            return TickReport(started_at=now, overlapped=True)

        try:
            due, missed = self.collect_due(now)
            report = TickReport(started_at=now, due=len(due), missed=missed)
            if not due:
                if now.minute == 0:
                    logger.info("No recipients scheduled for %02d:00 UTC", now.hour)
                return report

            logger.info("Scheduler running for %02d:00 UTC: %d recipient(s) due", now.hour, len(due))
            failures_before = self.history.datastore.failure_count
            report.outcomes = self._run_workers(due)
            report.persistence_failures = self.history.datastore.failure_count - failures_before
            logger.info(
                "Scheduler run completed: %d generated, %d delivered, %d failed",
                report.succeeded,
                report.delivered,
                report.failed,
            )
            if report.persistence_failures:
                logger.error(
                    "%d store write(s) failed during this run; state is held in memory only",
                    report.persistence_failures,
                )
            return report
        finally:
            self._tick_lock.release()

    def _run_workers(self, due: list[tuple[str, RecipientPreferences]]) -> list[DigestOutcome]:
        work: queue.Queue = queue.Queue()
        for item in due:
            work.put(item)

        outcomes: list[DigestOutcome] = []
        outcomes_lock = threading.Lock()

        def worker() -> None:
            while True:
                try:
                    recipient_id, prefs = work.get_nowait()
                except queue.Empty:
                    return
                outcome = self._process(recipient_id, prefs)
                with outcomes_lock:
                    outcomes.append(outcome)
                # Pause between recipients to spare the external services
                if self.throttle_seconds > 0 and not work.empty():
                    self.sleep(self.throttle_seconds)

        pool_size = min(self.workers, len(due))
        if pool_size == 1:
            worker()
            return outcomes

        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="digest-worker") as pool:
            futures = [pool.submit(worker) for _ in range(pool_size)]
            for future in futures:
                future.result()
        return outcomes

    def _process(self, recipient_id: str, prefs: RecipientPreferences) -> DigestOutcome:
        try:
            return self.pipeline.process_digest(recipient_id, prefs)
        except Exception as e:
            logger.exception("Error processing digest for %s", short_id(recipient_id))
            return DigestOutcome(recipient_id, success=False, error=str(e))

    def describe(self) -> dict:
        with self._queue_lock:
            next_fire = self.fire_queue.peek()
            scheduled = len(self.fire_queue)
        return {
            "scheduler_running": self.running,
            "scheduled_recipients": scheduled,
            "next_fire_at": next_fire.isoformat() if next_fire else None,
            "workers": self.workers,
            "throttle_seconds": self.throttle_seconds,
            "schedule": "Hourly at minute 0 UTC, per recipient's scheduled hour",
        }
