"""
In-process prioritization scheduler.

Per user: one pending set of thread ids behind a single debounce timer (the
timer is not reset by later enqueues), a running flag that keeps at most one
batch per user in flight, and a follow-up timer that drains deferred rows
left behind by guardrails.
"""
import logging
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal
from ..models import DeferredPrioritization

logger = logging.getLogger(__name__)

# Returns None when the run was skipped (no usable credentials, nothing to score)
RunBatch = Callable[[int, list[str], str], Any]
CountDeferred = Callable[[int], int]
# (delay_seconds, callback) -> object with start() and cancel(), like threading.Timer
TimerFactory = Callable[[float, Callable[[], None]], Any]

FOLLOWUP_TRIGGER = "history_delta"
BACKLOG_TRIGGER = "deferred_backlog"


def daemon_timer(delay_s: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay_s, callback)
    timer.daemon = True
    return timer


@dataclass
class _PendingBatch:
    thread_ids: set[str] = field(default_factory=set)
    trigger: str = ""
    timer: Any = None


class PrioritizationScheduler:
    def __init__(
        self,
        run_batch: RunBatch,
        count_deferred: CountDeferred,
        debounce_ms: Optional[int] = None,
        followup_ms: Optional[int] = None,
        timer_factory: Optional[TimerFactory] = None,
    ):
        self._run_batch = run_batch
        self._count_deferred = count_deferred
        self.debounce_ms = settings.priority_debounce_ms if debounce_ms is None else debounce_ms
        self.followup_ms = settings.priority_followup_ms if followup_ms is None else followup_ms
        self._timer_factory = timer_factory or daemon_timer
        # Guards the three maps only; never held while a batch runs.
        self._lock = threading.Lock()
        self._pending: dict[int, _PendingBatch] = {}
        self._running: set[int] = set()
        self._followups: dict[int, Any] = {}
        self._closed = False

    def enqueue(self, user_id: int, thread_ids: Iterable[str], trigger: str) -> None:
        self._enqueue_with_delay(user_id, thread_ids, trigger, self.debounce_ms)

    def enqueue_deferred(self, user_id: int, trigger: str, delay_ms: Optional[int] = None) -> None:
        """Arm a drain cycle with no new ids; the worker picks up the user's deferred rows."""
        delay = self.followup_ms if delay_ms is None else delay_ms
        self._enqueue_with_delay(user_id, [], trigger, delay, allow_empty=True)

    def enqueue_now(self, user_id: int, thread_ids: Iterable[str], trigger: str) -> None:
        """Merge ids into the pending set and flush right away, bypassing any armed debounce timer."""
        ids = [tid for tid in thread_ids or [] if tid]
        with self._lock:
            if self._closed:
                return
            entry = self._pending.setdefault(user_id, _PendingBatch(trigger=trigger))
            entry.thread_ids.update(ids)
            entry.trigger = trigger or entry.trigger
        self._timer_factory(0.0, partial(self.flush, user_id)).start()

    def pending_thread_ids(self, user_id: int) -> set[str]:
        with self._lock:
            entry = self._pending.get(user_id)
            return set(entry.thread_ids) if entry else set()

    def is_running(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._running

    def has_followup(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._followups

    def shutdown(self) -> None:
        """Cancel every armed timer; later enqueues are ignored."""
        with self._lock:
            self._closed = True
            timers = [e.timer for e in self._pending.values() if e.timer is not None]
            timers.extend(self._followups.values())
            self._pending.clear()
            self._followups.clear()
        for timer in timers:
            timer.cancel()

    def _enqueue_with_delay(
        self,
        user_id: int,
        thread_ids: Iterable[str],
        trigger: str,
        delay_ms: int,
        allow_empty: bool = False,
    ) -> None:
        ids = [tid for tid in thread_ids or [] if tid]
        if not ids and not allow_empty:
            return
        timer = None
        with self._lock:
            if self._closed:
                return
            entry = self._pending.get(user_id)
            if entry is None:
                entry = _PendingBatch(trigger=trigger)
                self._pending[user_id] = entry
            entry.thread_ids.update(ids)
            entry.trigger = trigger or entry.trigger
            if entry.timer is None:
                timer = self._timer_factory(max(0, delay_ms) / 1000.0, partial(self.flush, user_id))
                entry.timer = timer
        if timer is not None:
            timer.start()

    def flush(self, user_id: int) -> None:
        """Timer callback: run one batch for the user's pending ids unless a batch is already running."""
        with self._lock:
            entry = self._pending.pop(user_id, None)
            if entry is None:
                return
            busy = user_id in self._running
            if not busy:
                self._running.add(user_id)
        if entry.timer is not None:
            entry.timer.cancel()

        if busy:
            # Picked up again by the next debounce window.
            self._enqueue_with_delay(user_id, entry.thread_ids, entry.trigger, self.debounce_ms, allow_empty=True)
            return

        result = None
        failed = False
        try:
            result = self._run_batch(user_id, sorted(entry.thread_ids), entry.trigger)
        except Exception:
            failed = True
            logger.exception(f"Prioritization batch failed for user_id={user_id} (trigger={entry.trigger})")
        finally:
            with self._lock:
                self._running.discard(user_id)

        if result is None and not failed:
            # Skipped run (unusable credentials or nothing to score): the next sync re-arms it.
            logger.debug(f"No prioritization batch ran for user_id={user_id}; no follow-up armed")
            return
        self._arm_followup(user_id)

    def _arm_followup(self, user_id: int) -> None:
        try:
            remaining = self._count_deferred(user_id)
        except Exception:
            logger.exception(f"Could not count deferred threads for user_id={user_id}")
            return
        if remaining <= 0:
            return
        with self._lock:
            if self._closed or user_id in self._followups:
                return
            timer = self._timer_factory(max(0, self.followup_ms) / 1000.0, partial(self._fire_followup, user_id))
            self._followups[user_id] = timer
        logger.info(f"{remaining} deferred threads left for user_id={user_id}; follow-up in {self.followup_ms}ms")
        timer.start()

    def _fire_followup(self, user_id: int) -> None:
        with self._lock:
            self._followups.pop(user_id, None)
        self.enqueue_deferred(user_id, FOLLOWUP_TRIGGER, delay_ms=0)


def count_deferred_in_db(user_id: int) -> int:
    db = SessionLocal()
    try:
        return db.query(DeferredPrioritization).filter(DeferredPrioritization.user_id == user_id).count()
    finally:
        db.close()


def run_batch_in_session(user_id: int, thread_ids: list[str], trigger: str):
    """Default run_batch: each batch gets its own session."""
    from .prioritization_worker import run_prioritization_batch

    db = SessionLocal()
    try:
        return run_prioritization_batch(db, user_id, thread_ids, trigger)
    finally:
        db.close()


_scheduler: Optional[PrioritizationScheduler] = None
_scheduler_lock = threading.Lock()


def get_scheduler() -> PrioritizationScheduler:
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = PrioritizationScheduler(run_batch_in_session, count_deferred_in_db)
        return _scheduler


def set_scheduler(scheduler: Optional[PrioritizationScheduler]) -> Optional[PrioritizationScheduler]:
    """Install the process-wide scheduler (None resets it). Returns the previous one."""
    global _scheduler
    with _scheduler_lock:
        previous, _scheduler = _scheduler, scheduler
    return previous


def enqueue_prioritization(user_id: int, thread_ids: Iterable[str], trigger: str) -> None:
    get_scheduler().enqueue(user_id, thread_ids, trigger)


def enqueue_deferred_prioritization(user_id: int, trigger: str, delay_ms: Optional[int] = None) -> None:
    get_scheduler().enqueue_deferred(user_id, trigger, delay_ms=delay_ms)


def requeue_deferred_backlog(db: Session, scheduler: Optional[PrioritizationScheduler] = None) -> list[int]:
    """Arm a drain cycle for every user with deferred rows (after a restart). Returns those user ids."""
    scheduler = scheduler or get_scheduler()
    user_ids = [
        uid for (uid,) in db.query(DeferredPrioritization.user_id).distinct().order_by(DeferredPrioritization.user_id)
    ]
    for uid in user_ids:
        scheduler.enqueue_deferred(uid, BACKLOG_TRIGGER, delay_ms=0)
    if user_ids:
        logger.info(f"Re-queued deferred prioritization backlog for {len(user_ids)} users")
    return user_ids
