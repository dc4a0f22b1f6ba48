"""Periodic jobs and the work queue that fans recurring transactions out.

Delivery is at-least-once: a work item whose handler raises is put back until
it has been attempted ``max_attempts`` times. Items are independent, so one
failing item never blocks the rest of the queue.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.engine import Engine

from pennywise.budget_alerts import ALERT_THRESHOLD, check_budget_alerts
from pennywise.notifications import NotificationSender
from pennywise.receipts import GenerativeClient
from pennywise.recurrence import WorkItem, process_one, scan_due
from pennywise.reports import send_monthly_reports

DEFAULT_MAX_ATTEMPTS = 3

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DrainReport:
    processed: int = 0
    retried: int = 0
    abandoned: int = 0


@dataclass
class WorkQueue:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    _items: Deque[Tuple[WorkItem, int]] = field(default_factory=deque)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def put(self, items: Iterable[WorkItem]) -> int:
        with self._lock:
            before = len(self._items)
            self._items.extend((item, 0) for item in items)
            return len(self._items) - before

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _pop(self) -> Optional[Tuple[WorkItem, int]]:
        with self._lock:
            return self._items.popleft() if self._items else None

    def _requeue(self, item: WorkItem, attempts: int) -> None:
        with self._lock:
            self._items.append((item, attempts))

    def drain(self, handler: Callable[[WorkItem], object]) -> DrainReport:
        processed = retried = abandoned = 0
        while True:
            entry = self._pop()
            if entry is None:
                break
            item, attempts = entry
            attempts += 1
            try:
                handler(item)
            except Exception as exc:
                if attempts < self.max_attempts:
                    retried += 1
                    logger.warning(
                        "work_item_retry",
                        transaction_id=item.transaction_id,
                        attempts=attempts,
                        error=str(exc),
                    )
                    self._requeue(item, attempts)
                else:
                    abandoned += 1
                    logger.error(
                        "work_item_abandoned",
                        transaction_id=item.transaction_id,
                        attempts=attempts,
                        error=str(exc),
                    )
                continue
            processed += 1
        return DrainReport(processed=processed, retried=retried, abandoned=abandoned)


def trigger_recurring_transactions(
    engine: Engine, queue: WorkQueue, now: Optional[datetime] = None
) -> int:
    """Scan for due recurring transactions and enqueue one work item each."""
    items = scan_due(engine, now)
    queued = queue.put(items)
    logger.info("recurring_triggered", queued=queued)
    return queued


def process_recurring_queue(
    engine: Engine, queue: WorkQueue, now: Optional[datetime] = None
) -> DrainReport:
    report = queue.drain(
        lambda item: process_one(engine, item.transaction_id, item.user_id, now=now)
    )
    logger.info(
        "recurring_queue_drained",
        processed=report.processed,
        retried=report.retried,
        abandoned=report.abandoned,
    )
    return report


def run_recurring_cycle(
    engine: Engine, queue: WorkQueue, now: Optional[datetime] = None
) -> DrainReport:
    trigger_recurring_transactions(engine, queue, now)
    return process_recurring_queue(engine, queue, now)


class PeriodicTrigger(ABC):
    @abstractmethod
    def schedule(self, name: str, period_seconds: float, job: Callable[[], object]) -> None:
        ...

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...


class IntervalTrigger(PeriodicTrigger):
    """Runs each scheduled job on its own daemon thread every ``period_seconds``."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Tuple[float, Callable[[], object]]] = {}
        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()

    def schedule(self, name: str, period_seconds: float, job: Callable[[], object]) -> None:
        if period_seconds <= 0:
            raise ValueError("period_seconds must be greater than zero.")
        self._jobs[name] = (period_seconds, job)

    def start(self) -> None:
        self._stop.clear()
        for name, (period, job) in self._jobs.items():
            thread = threading.Thread(
                target=self._run, args=(name, period, job), name=f"job-{name}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads.clear()

    def _run(self, name: str, period: float, job: Callable[[], object]) -> None:
        while not self._stop.wait(period):
            try:
                job()
            except Exception:
                logger.exception("job_failed", job=name)


def schedule_default_jobs(
    trigger: PeriodicTrigger,
    engine: Engine,
    queue: WorkQueue,
    sender: NotificationSender,
    insights_client: Optional[GenerativeClient] = None,
    recurring_period: float = 24 * 60 * 60,
    threshold=ALERT_THRESHOLD,
) -> None:
    trigger.schedule("recurring-transactions", recurring_period, lambda: run_recurring_cycle(engine, queue))
    trigger.schedule(
        "budget-alerts",
        6 * 60 * 60,
        lambda: check_budget_alerts(engine, sender, threshold=threshold),
    )
    trigger.schedule(
        "monthly-reports",
        24 * 60 * 60,
        lambda: _monthly_reports_if_first_day(engine, sender, insights_client),
    )


def _monthly_reports_if_first_day(
    engine: Engine, sender: NotificationSender, insights_client: Optional[GenerativeClient]
) -> int:
    today = datetime.now().date()
    if today.day != 1:
        return 0
    return send_monthly_reports(engine, sender, insights_client, today)
