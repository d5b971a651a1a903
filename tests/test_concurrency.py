import threading
import time
import uuid
from datetime import date

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from concurrency import BudgetLocks, CancelScope, check_scope
from database import create_db_engine, init_db, session_scope
from errors import OperationCancelled
from models import Budget, Category, Family, TransactionType
from schemas import BudgetIn, TransactionIn
from services import BudgetService, TransactionService


def test_hold_serializes_read_modify_write() -> None:
    locks = BudgetLocks()
    budget_id = uuid.uuid4()
    state = {"spent": 0}

    def worker() -> None:
        for _ in range(20):
            with locks.hold(budget_id):
                current = state["spent"]
                time.sleep(0.0005)
                state["spent"] = current + 1

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert state["spent"] == 80


def test_distinct_budgets_do_not_block_each_other() -> None:
    locks = BudgetLocks()
    with locks.hold(uuid.uuid4()):
        with locks.hold(uuid.uuid4(), timeout=0.01):
            pass


def test_hold_times_out() -> None:
    locks = BudgetLocks()
    budget_id = uuid.uuid4()
    with locks.hold(budget_id):
        with pytest.raises(OperationCancelled):
            with locks.hold(budget_id, timeout=0.01):
                pass

    with locks.hold(budget_id, timeout=0.01):
        pass


def test_hold_respects_scope_deadline() -> None:
    locks = BudgetLocks()
    budget_id = uuid.uuid4()
    with locks.hold(budget_id):
        with pytest.raises(OperationCancelled):
            with locks.hold(budget_id, scope=CancelScope.with_timeout(0.01)):
                pass


def test_cancel_scope() -> None:
    scope = CancelScope()
    assert not scope.cancelled
    assert scope.remaining() is None
    check_scope(scope, "noop")
    check_scope(None, "noop")

    scope.cancel()
    assert scope.cancelled
    with pytest.raises(OperationCancelled, match="recalculate_spent cancelled"):
        scope.check("recalculate_spent")

    expired = CancelScope.with_timeout(0)
    assert expired.cancelled
    assert expired.remaining() == 0.0


def test_registry_forgets_released_budgets() -> None:
    locks = BudgetLocks()
    budget_id = uuid.uuid4()
    with locks.hold(budget_id):
        assert locks.tracked() == 1
    assert locks.tracked() == 0

    with locks.hold(budget_id):
        with pytest.raises(OperationCancelled):
            with locks.hold(budget_id, timeout=0.01):
                pass
        assert locks.tracked() == 1
    assert locks.tracked() == 0


def test_parallel_writers_leave_exact_spent(tmp_path) -> None:
    engine = create_db_engine(f"sqlite:///{tmp_path / 'budgets.db'}")
    init_db(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)

    with session_scope(factory) as session:
        family = Family(name="Home")
        session.add(family)
        session.flush()
        food = Category(family_id=family.id, name="Food", type=TransactionType.expense)
        session.add(food)
        session.commit()
        family_id, food_id = family.id, food.id
        everything = BudgetService(session).create(
            family_id,
            BudgetIn(
                name="Everything",
                amount_cents=100_000,
                start_date=date(2025, 1, 1),
                end_date=date(2025, 1, 31),
            ),
        )
        groceries = BudgetService(session).create(
            family_id,
            BudgetIn(
                name="Groceries",
                amount_cents=100_000,
                category_id=food_id,
                start_date=date(2025, 1, 1),
                end_date=date(2025, 1, 31),
            ),
        )
        budget_ids = [everything.id, groceries.id]

    errors: list[Exception] = []

    def writer(day: int) -> None:
        try:
            with session_scope(factory) as session:
                txns = TransactionService(session, family_id)
                for _ in range(15):
                    txns.create(
                        TransactionIn(
                            date=date(2025, 1, day),
                            type=TransactionType.expense,
                            amount_cents=100,
                            category_id=food_id,
                        )
                    )
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=writer, args=(day,)) for day in range(1, 7)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with session_scope(factory) as session:
        spent = session.scalars(
            select(Budget.spent_cents).where(Budget.id.in_(budget_ids))
        ).all()
    assert spent == [9_000, 9_000]
    engine.dispose()
