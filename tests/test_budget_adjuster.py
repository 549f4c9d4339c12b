from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base, enable_sqlite_savepoints
from models import Budget, BudgetPeriod, BudgetStatus
from schemas import BudgetIn
from services import BudgetAdjuster, BudgetService


def _engine():
    engine = create_engine("sqlite:///:memory:")
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    return engine


def _groceries(session: Session, **overrides) -> Budget:
    fields = dict(
        name="Groceries",
        category="Food",
        period=BudgetPeriod.monthly,
        start_date=date(2025, 1, 1),
        end_date=date(2025, 1, 31),
        amount_cents=10_000,
    )
    fields.update(overrides)
    return BudgetService(session).create(BudgetIn(**fields))


def test_adjustment_past_limit_flips_status_to_exceeded() -> None:
    engine = _engine()
    with Session(engine) as session:
        budget = _groceries(session, spent_cents=4_000)
        assert budget.status == BudgetStatus.active

        result = BudgetAdjuster(session).adjust("Food", date(2025, 1, 10), 7_000)
        session.commit()

        assert result.updated_budget_ids == [budget.id]
        assert result.failures == []
        budget = session.get(Budget, budget.id)
        assert budget.spent_cents == 11_000
        assert budget.status == BudgetStatus.exceeded


def test_negative_delta_never_drives_spent_below_zero() -> None:
    engine = _engine()
    with Session(engine) as session:
        budget = _groceries(session, spent_cents=12_000)
        assert budget.status == BudgetStatus.exceeded

        BudgetAdjuster(session).adjust("Food", date(2025, 1, 10), -50_000)
        session.commit()

        budget = session.get(Budget, budget.id)
        assert budget.spent_cents == 0
        assert budget.status == BudgetStatus.active


def test_window_bounds_are_inclusive_and_overlaps_all_adjust() -> None:
    engine = _engine()
    with Session(engine) as session:
        january = _groceries(session)
        quarter = _groceries(
            session,
            name="Q1 groceries",
            period=BudgetPeriod.monthly,
            start_date=date(2025, 1, 31),
            end_date=date(2025, 3, 31),
            amount_cents=30_000,
        )
        february = _groceries(
            session,
            name="February",
            start_date=date(2025, 2, 1),
            end_date=date(2025, 2, 28),
        )

        result = BudgetAdjuster(session).adjust("Food", date(2025, 1, 31), 2_500)
        session.commit()

        assert sorted(result.updated_budget_ids) == sorted([january.id, quarter.id])
        assert session.get(Budget, january.id).spent_cents == 2_500
        assert session.get(Budget, quarter.id).spent_cents == 2_500
        assert session.get(Budget, february.id).spent_cents == 0


def test_other_users_and_categories_are_not_adjusted() -> None:
    engine = _engine()
    with Session(engine) as session:
        mine = _groceries(session)
        fuel = _groceries(session, name="Fuel", category="Transport")
        theirs = BudgetService(session, user_id=2).create(
            BudgetIn(
                name="Groceries",
                category="Food",
                period=BudgetPeriod.monthly,
                start_date=date(2025, 1, 1),
                end_date=date(2025, 1, 31),
                amount_cents=10_000,
            )
        )

        BudgetAdjuster(session, user_id=1).adjust("Food", date(2025, 1, 5), 1_000)
        session.commit()

        assert session.get(Budget, mine.id).spent_cents == 1_000
        assert session.get(Budget, fuel.id).spent_cents == 0
        assert session.get(Budget, theirs.id).spent_cents == 0


@pytest.mark.parametrize(
    "category, on_date, delta",
    [
        (None, date(2025, 1, 5), 1_000),
        ("", date(2025, 1, 5), 1_000),
        ("Food", None, 1_000),
        ("Food", date(2025, 1, 5), 0),
    ],
)
def test_missing_inputs_are_a_no_op(category, on_date, delta) -> None:
    engine = _engine()
    with Session(engine) as session:
        budget = _groceries(session)

        result = BudgetAdjuster(session).adjust(category, on_date, delta)
        session.commit()

        assert result.updated_budget_ids == []
        assert session.get(Budget, budget.id).spent_cents == 0


def test_failing_budget_does_not_block_siblings(monkeypatch) -> None:
    engine = _engine()
    with Session(engine) as session:
        broken = _groceries(session, name="Broken")
        healthy = _groceries(session, name="Healthy")

        original = BudgetAdjuster._apply

        def failing_apply(self, budget_id, delta_cents):
            if budget_id == broken.id:
                raise OperationalError("UPDATE budgets", {}, Exception("locked"))
            return original(self, budget_id, delta_cents)

        monkeypatch.setattr(BudgetAdjuster, "_apply", failing_apply)
        result = BudgetAdjuster(session).adjust("Food", date(2025, 1, 5), 3_000)
        session.commit()

        assert result.updated_budget_ids == [healthy.id]
        assert [f.budget_id for f in result.failures] == [broken.id]
        assert session.get(Budget, broken.id).spent_cents == 0
        assert session.get(Budget, healthy.id).spent_cents == 3_000


def test_budget_window_must_be_ordered() -> None:
    with pytest.raises(ValidationError):
        BudgetIn(
            name="Backwards",
            category="Food",
            period=BudgetPeriod.monthly,
            start_date=date(2025, 2, 1),
            end_date=date(2025, 1, 1),
            amount_cents=1_000,
        )
