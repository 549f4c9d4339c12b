import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from models import (
    ErrorKind,
    Frequency,
    Obligation,
    ObligationStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from services import BudgetAdjuster, ObligationService


logger = logging.getLogger(__name__)

_MONTH_STEPS = {
    Frequency.monthly: 1,
    Frequency.quarterly: 3,
    Frequency.yearly: 12,
}


class InvalidFrequency(ValueError):
    pass


class StorageUnavailable(RuntimeError):
    pass


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def parse_frequency(value: Union[Frequency, str]) -> Frequency:
    try:
        return Frequency(value)
    except ValueError as exc:
        raise InvalidFrequency(f"Unknown frequency: {value!r}") from exc


def advance(
    current: date,
    frequency: Union[Frequency, str],
    *,
    anchor_day: Optional[int] = None,
) -> date:
    """Return the occurrence that follows ``current``.

    Month-based units clamp to the end of shorter months. ``anchor_day`` pins
    them to a day of month, so a schedule started on the 31st comes back to
    the 31st after February instead of drifting to the 29th.
    """
    unit = parse_frequency(frequency)
    if unit == Frequency.daily:
        return current + timedelta(days=1)
    if unit == Frequency.weekly:
        return current + timedelta(weeks=1)
    return _add_months(
        current, _MONTH_STEPS[unit], desired_day=anchor_day or current.day
    )


def schedule_anchor_day(start_date: date, occurrence_date: date) -> int:
    """Day of month that month-based steps from ``occurrence_date`` aim for.

    The occurrence keeps its own day, unless it was clamped to a month end
    below the start day; then the start day is restored.
    """
    at_month_end = occurrence_date.day == days_in_month(
        occurrence_date.year, occurrence_date.month
    )
    if at_month_end and start_date.day > occurrence_date.day:
        return start_date.day
    return occurrence_date.day


@dataclass(frozen=True)
class ObligationError:
    obligation_id: int
    kind: ErrorKind
    reason: str


@dataclass
class RunResult:
    user_id: int
    today: date
    created_transaction_ids: list[int] = field(default_factory=list)
    updated_obligation_ids: list[int] = field(default_factory=list)
    errors: list[ObligationError] = field(default_factory=list)
    warnings: list[ObligationError] = field(default_factory=list)

    def mark_updated(self, obligation_id: int) -> None:
        if obligation_id not in self.updated_obligation_ids:
            self.updated_obligation_ids.append(obligation_id)


def classify_error(exc: Exception) -> ErrorKind:
    if isinstance(exc, InvalidFrequency):
        return ErrorKind.invalid_frequency
    if isinstance(exc, StaleDataError):
        return ErrorKind.concurrent_modification
    if isinstance(exc, (SQLAlchemyError, TimeoutError)):
        return ErrorKind.storage_unavailable
    return ErrorKind.unexpected


class CatchUpProcessor:
    """Materializes every due occurrence of a user's active obligations.

    Callers must not run two catch-ups for the same user at once; see
    ``scheduler.run_for_user``. Each occurrence commits on its own: the ledger
    transaction, the budget updates and the obligation's advanced cursor land
    together, so an interrupted run resumes at the first occurrence that did
    not commit.
    """

    def __init__(
        self, session: Session, *, max_occurrences: Optional[int] = None
    ) -> None:
        self.session = session
        if max_occurrences is None:
            max_occurrences = get_settings().max_occurrences_per_run
        self.max_occurrences = max_occurrences

    def process_due(self, user_id: int, today: Optional[date] = None) -> RunResult:
        today = today or local_today()
        result = RunResult(user_id=user_id, today=today)
        try:
            due = ObligationService(self.session, user_id).list_due(today)
            obligation_ids = [obligation.id for obligation in due]
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageUnavailable(
                f"Could not load due obligations for user {user_id}"
            ) from exc

        for obligation_id in obligation_ids:
            try:
                self._catch_up(obligation_id, user_id, today, result)
            except Exception as exc:
                self.session.rollback()
                kind = classify_error(exc)
                logger.warning(
                    f"catch_up_failed: user_id={user_id} "
                    f"obligation_id={obligation_id} kind={kind.value} error={exc!r}"
                )
                result.errors.append(ObligationError(obligation_id, kind, str(exc)))

        logger.info(
            f"catch_up_run: user_id={user_id} today={today} "
            f"created={len(result.created_transaction_ids)} "
            f"updated={len(result.updated_obligation_ids)} "
            f"errors={len(result.errors)} warnings={len(result.warnings)}"
        )
        return result

    def _catch_up(
        self, obligation_id: int, user_id: int, today: date, result: RunResult
    ) -> None:
        obligation = self.session.get(Obligation, obligation_id)
        if obligation is None:
            return
        unit = parse_frequency(obligation.frequency)
        adjuster = BudgetAdjuster(self.session, user_id)
        processed = 0

        while True:
            # Status may change underneath a long backfill (pause, edit).
            self.session.refresh(obligation)
            if (
                obligation.status != ObligationStatus.active
                or obligation.next_due > today
            ):
                break
            if processed >= self.max_occurrences:
                result.warnings.append(
                    ObligationError(
                        obligation_id,
                        ErrorKind.occurrence_cap_reached,
                        f"Stopped after {processed} occurrences; "
                        f"next due {obligation.next_due.isoformat()}",
                    )
                )
                break

            occurrence_date = obligation.next_due
            if obligation.end_date and occurrence_date > obligation.end_date:
                obligation.status = ObligationStatus.ended
                self.session.commit()
                result.mark_updated(obligation_id)
                break

            txn = self._materialize(obligation, occurrence_date)
            failures = []
            if txn is not None:
                adjustment = adjuster.adjust(
                    obligation.category, occurrence_date, abs(obligation.amount_cents)
                )
                failures = adjustment.failures

            obligation.total_occurrences += 1
            obligation.last_processed = occurrence_date
            obligation.next_due = advance(
                occurrence_date,
                unit,
                anchor_day=schedule_anchor_day(obligation.start_date, occurrence_date),
            )
            if obligation.end_date and obligation.next_due > obligation.end_date:
                obligation.status = ObligationStatus.ended
            self.session.commit()
            processed += 1

            result.mark_updated(obligation_id)
            if txn is not None:
                result.created_transaction_ids.append(txn.id)
            if failures:
                budget_ids = ", ".join(str(f.budget_id) for f in failures)
                result.warnings.append(
                    ObligationError(
                        obligation_id,
                        ErrorKind.partial_commit,
                        f"Occurrence {occurrence_date.isoformat()} committed but "
                        f"budgets {budget_ids} were not adjusted",
                    )
                )

    def _materialize(
        self, obligation: Obligation, occurrence_date: date
    ) -> Optional[Transaction]:
        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.user_id == obligation.user_id,
                Transaction.origin_obligation_id == obligation.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        existing = self.session.execute(exists_stmt).scalar_one_or_none()
        if existing is not None:
            return None

        txn = Transaction(
            user_id=obligation.user_id,
            description=obligation.description,
            amount_cents=-abs(obligation.amount_cents),
            category=obligation.category,
            date=occurrence_date,
            ledger_id=obligation.ledger_id,
            type=TransactionType.expense,
            status=TransactionStatus.completed,
            origin_obligation_id=obligation.id,
            occurrence_date=occurrence_date,
        )
        try:
            with self.session.begin_nested():
                self.session.add(txn)
        except IntegrityError:
            logger.info(
                f"occurrence_exists: obligation_id={obligation.id} "
                f"occurrence_date={occurrence_date}"
            )
            return None
        return txn
