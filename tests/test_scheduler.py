from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base, enable_sqlite_savepoints
from models import Frequency, Transaction
from schemas import ObligationIn
from scheduler import (
    OwnerLocks,
    RunInProgress,
    due_user_ids,
    run_all_due,
    run_for_user,
)
from services import ObligationService


def _engine():
    engine = create_engine("sqlite:///:memory:")
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    return engine


def _seed(session: Session, user_id: int, start: date) -> None:
    ObligationService(session, user_id=user_id).create(
        ObligationIn(
            description="Insurance",
            amount_cents=2_500,
            category="Insurance",
            frequency=Frequency.monthly,
            start_date=start,
        )
    )


def test_run_for_user_refuses_overlapping_runs() -> None:
    engine = _engine()
    locks = OwnerLocks()

    with locks.hold(1):
        assert locks.is_locked(1)
        with pytest.raises(RunInProgress):
            run_for_user(
                1,
                date(2024, 3, 1),
                locks=locks,
                lock_timeout=0,
                session_factory=lambda: Session(engine),
            )
        assert not locks.is_locked(2)

    assert not locks.is_locked(1)


def test_run_for_user_releases_lock_after_run() -> None:
    engine = _engine()
    with Session(engine) as session:
        _seed(session, 1, date(2024, 1, 1))

    locks = OwnerLocks()
    result = run_for_user(
        1,
        date(2024, 3, 1),
        locks=locks,
        session_factory=lambda: Session(engine),
    )

    assert len(result.created_transaction_ids) == 3
    assert not locks.is_locked(1)


def test_run_all_due_sweeps_every_user_with_due_obligations() -> None:
    engine = _engine()
    with Session(engine) as session:
        _seed(session, 1, date(2024, 1, 1))
        _seed(session, 2, date(2024, 2, 1))
        _seed(session, 3, date(2024, 6, 1))
        assert due_user_ids(session, date(2024, 3, 1)) == [1, 2]

    results = run_all_due(
        date(2024, 3, 1),
        locks=OwnerLocks(),
        session_factory=lambda: Session(engine),
    )

    assert [r.user_id for r in results] == [1, 2]
    with Session(engine) as session:
        assert session.scalar(select(func.count(Transaction.id))) == 5
        assert due_user_ids(session, date(2024, 3, 1)) == []


def test_run_all_due_skips_users_already_running() -> None:
    engine = _engine()
    with Session(engine) as session:
        _seed(session, 1, date(2024, 1, 1))
        _seed(session, 2, date(2024, 1, 1))

    locks = OwnerLocks()
    with locks.hold(1):
        results = run_all_due(
            date(2024, 1, 31),
            locks=locks,
            lock_timeout=0,
            session_factory=lambda: Session(engine),
        )

    assert [r.user_id for r in results] == [2]
    with Session(engine) as session:
        assert due_user_ids(session, date(2024, 1, 31)) == [1]


def test_owner_locks_forget_users_once_released() -> None:
    locks = OwnerLocks()
    for user_id in range(50):
        with locks.hold(user_id):
            assert len(locks) == 1
    assert len(locks) == 0

    with locks.hold(7):
        with pytest.raises(RunInProgress):
            with locks.hold(7, timeout=0):
                pass
        assert locks.is_locked(7)
        assert len(locks) == 1
    assert len(locks) == 0
    assert not locks.is_locked(7)
