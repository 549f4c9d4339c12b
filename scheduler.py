import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Callable, ContextManager, Iterator, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from models import Obligation, ObligationStatus
from recurrence import CatchUpProcessor, RunResult, StorageUnavailable, local_today


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SessionFactory = Callable[[], ContextManager[Session]]


class RunInProgress(RuntimeError):
    pass


class _OwnerLock:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class OwnerLocks:
    """One lock per user; catch-up runs for the same user never overlap.

    Entries exist only while some caller holds or waits for them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, _OwnerLock] = {}

    def _checkout(self, user_id: int) -> _OwnerLock:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = _OwnerLock()
            entry.users += 1
            return entry

    def _checkin(self, user_id: int, entry: _OwnerLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[user_id]

    def is_locked(self, user_id: int) -> bool:
        with self._guard:
            entry = self._locks.get(user_id)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, user_id: int, timeout: Optional[float] = None) -> Iterator[None]:
        entry = self._checkout(user_id)
        try:
            if timeout is None:
                acquired = entry.lock.acquire()
            else:
                acquired = entry.lock.acquire(timeout=timeout)
            if not acquired:
                raise RunInProgress(f"Catch-up already running for user {user_id}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(user_id, entry)


owner_locks = OwnerLocks()


def run_for_user(
    user_id: int,
    today: Optional[date] = None,
    *,
    locks: Optional[OwnerLocks] = None,
    lock_timeout: Optional[float] = None,
    session_factory: SessionFactory = session_scope,
) -> RunResult:
    if locks is None:
        locks = owner_locks
    if lock_timeout is None:
        lock_timeout = get_settings().lock_timeout_secs
    with locks.hold(user_id, timeout=lock_timeout):
        with session_factory() as session:
            return CatchUpProcessor(session).process_due(user_id, today)


def due_user_ids(session: Session, today: date) -> list[int]:
    stmt = (
        select(Obligation.user_id)
        .where(
            Obligation.status == ObligationStatus.active,
            Obligation.next_due <= today,
        )
        .distinct()
        .order_by(Obligation.user_id)
    )
    return list(session.scalars(stmt).all())


def run_all_due(
    today: Optional[date] = None,
    *,
    locks: Optional[OwnerLocks] = None,
    lock_timeout: Optional[float] = None,
    session_factory: SessionFactory = session_scope,
) -> list[RunResult]:
    today = today or local_today()
    with session_factory() as session:
        user_ids = due_user_ids(session, today)

    results = []
    for user_id in user_ids:
        try:
            results.append(
                run_for_user(
                    user_id,
                    today,
                    locks=locks,
                    lock_timeout=lock_timeout,
                    session_factory=session_factory,
                )
            )
        except (RunInProgress, StorageUnavailable) as exc:
            logger.warning(f"sweep_skipped: user_id={user_id} error={exc!r}")
    return results


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        results = run_all_due()
        created = sum(len(r.created_transaction_ids) for r in results)
        errors = sum(len(r.errors) for r in results)
        logger.info(
            f"scheduler_run: source={source} users={len(results)} "
            f"occurrences_posted={created} errors={errors}"
        )

    def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled by configuration")
            return

        self._run_job("startup")

        trigger = CronTrigger(
            hour=self.settings.scheduler_cron_hour,
            minute=self.settings.scheduler_cron_minute,
        )
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily"],
            id="catch_up_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=self.settings.scheduler_interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval_safety_net"],
            id="catch_up_safety_net",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily "
            f"{self.settings.scheduler_cron_hour:02d}:"
            f"{self.settings.scheduler_cron_minute:02d} and "
            f"{self.settings.scheduler_interval_hours}h safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
