from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from sqlalchemy import case, cast, select, update
from sqlalchemy.orm import Session

from models import (
    Budget,
    BudgetStatus,
    Frequency,
    Obligation,
    ObligationStatus,
)
from schemas import BudgetIn, ObligationIn


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def budget_status(spent_cents: int, amount_cents: int) -> BudgetStatus:
    if spent_cents >= amount_cents:
        return BudgetStatus.exceeded
    return BudgetStatus.active


class ObligationService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def get(self, obligation_id: int) -> Obligation:
        obligation = self.session.get(Obligation, obligation_id)
        if not obligation or obligation.user_id != self.user_id:
            raise ValueError("Obligation not found")
        return obligation

    def list_due(self, today: date) -> list[Obligation]:
        stmt = (
            select(Obligation)
            .where(
                Obligation.user_id == self.user_id,
                Obligation.status == ObligationStatus.active,
                Obligation.next_due <= today,
            )
            .order_by(Obligation.next_due, Obligation.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: ObligationIn) -> Obligation:
        obligation = Obligation(
            user_id=self.user_id,
            description=data.description,
            amount_cents=data.amount_cents,
            category=data.category,
            frequency=data.frequency.value,
            start_date=data.start_date,
            next_due=data.start_date,
            end_date=data.end_date,
            status=data.status,
            ledger_id=data.ledger_id,
        )
        self.session.add(obligation)
        self.session.commit()
        self.session.refresh(obligation)
        return obligation

    def set_status(self, obligation_id: int, status: ObligationStatus) -> Obligation:
        obligation = self.get(obligation_id)
        obligation.status = status
        self.session.commit()
        return obligation

    def statistics(self) -> dict[str, object]:
        stmt = select(Obligation).where(
            Obligation.user_id == self.user_id,
            Obligation.status == ObligationStatus.active,
        )
        active = self.session.scalars(stmt).all()

        def monthly_amount(obligation: Obligation) -> int:
            amount = obligation.amount_cents
            if obligation.frequency == Frequency.daily.value:
                return int(amount * 30.44)
            elif obligation.frequency == Frequency.weekly.value:
                return int(amount * 4.35)
            elif obligation.frequency == Frequency.monthly.value:
                return amount
            elif obligation.frequency == Frequency.quarterly.value:
                return int(amount / 3)
            elif obligation.frequency == Frequency.yearly.value:
                return int(amount / 12)
            return 0

        next_due = min((o.next_due for o in active), default=None)
        return {
            "active_count": len(active),
            "monthly_total_cents": sum(monthly_amount(o) for o in active),
            "next_due": next_due,
        }


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        budget = Budget(
            user_id=self.user_id,
            name=data.name,
            category=data.category,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            amount_cents=data.amount_cents,
            spent_cents=data.spent_cents,
            status=budget_status(data.spent_cents, data.amount_cents),
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def covering(self, category: str, on_date: date) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.category == category,
                Budget.start_date <= on_date,
                Budget.end_date >= on_date,
            )
            .order_by(Budget.id)
        )
        return self.session.scalars(stmt).all()


@dataclass(frozen=True)
class BudgetFailure:
    budget_id: int
    reason: str


@dataclass
class AdjustmentResult:
    updated_budget_ids: list[int] = field(default_factory=list)
    failures: list[BudgetFailure] = field(default_factory=list)


class BudgetAdjuster:
    """Applies spend deltas to every budget whose window covers a date.

    Each budget is updated by a single UPDATE statement inside its own
    savepoint, so ``spent_cents`` and ``status`` move together and a failing
    budget leaves its siblings untouched. Failures are returned, not raised.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def adjust(
        self,
        category: Optional[str],
        occurrence_date: Optional[date],
        delta_cents: Optional[int],
    ) -> AdjustmentResult:
        result = AdjustmentResult()
        if not category or occurrence_date is None or not delta_cents:
            return result

        budgets = BudgetService(self.session, self.user_id).covering(
            category, occurrence_date
        )
        for budget in budgets:
            budget_id = budget.id
            try:
                with self.session.begin_nested():
                    self._apply(budget_id, delta_cents)
            except Exception as exc:
                logger.warning(
                    f"budget_adjust_failed: user_id={self.user_id} "
                    f"budget_id={budget_id} error={exc!r}"
                )
                result.failures.append(BudgetFailure(budget_id, str(exc)))
                continue
            self.session.expire(budget)
            result.updated_budget_ids.append(budget_id)
        return result

    def _apply(self, budget_id: int, delta_cents: int) -> None:
        raw = Budget.spent_cents + delta_cents
        spent = case((raw < 0, 0), else_=raw)
        status = cast(
            case(
                (spent >= Budget.amount_cents, BudgetStatus.exceeded.value),
                else_=BudgetStatus.active.value,
            ),
            Budget.__table__.c.status.type,
        )
        stmt = (
            update(Budget)
            .where(Budget.id == budget_id, Budget.user_id == self.user_id)
            .values(spent_cents=spent, status=status, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)
